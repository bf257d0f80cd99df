"""Quality gates: fixed order, short circuit, output truncation."""

from __future__ import annotations

import pytest

from fakes import GATE_COMMANDS, FakeSandbox
from featureforge.errors import ProtocolViolation
from featureforge.pipeline.quality_gates import run_all_gates, run_gate, truncate_tail
from featureforge.schemas import GateName, GateStatus


@pytest.mark.asyncio
async def test_all_gates_pass_in_order():
    sandbox = FakeSandbox()

    results = await run_all_gates(sandbox, GATE_COMMANDS, attempt=2)

    assert [r.gate for r in results] == [GateName.TYPECHECK, GateName.LINT, GateName.TEST, GateName.BUILD]
    assert all(r.status == GateStatus.PASSED for r in results)
    assert {r.attempt for r in results} == {2}
    assert sandbox.gate_commands_run == ["typecheck", "lint", "test", "build"]


@pytest.mark.asyncio
async def test_typecheck_failure_short_circuits():
    sandbox = FakeSandbox(gate_outcome=lambda attempt, gate: (2, "src/toggle.ts(3,7): error TS2322") if gate == "typecheck" else (0, "ok"))

    results = await run_all_gates(sandbox, GATE_COMMANDS)

    [result] = results
    assert result.gate == GateName.TYPECHECK
    assert result.status == GateStatus.FAILED
    assert "TS2322" in result.output
    assert sandbox.gate_commands_run == ["typecheck"]


@pytest.mark.asyncio
async def test_test_failure_stops_before_build():
    sandbox = FakeSandbox(gate_outcome=lambda attempt, gate: (1, "1 failed") if gate == "test" else (0, "ok"))

    results = await run_all_gates(sandbox, GATE_COMMANDS)

    assert [r.status for r in results] == [GateStatus.PASSED, GateStatus.PASSED, GateStatus.FAILED]
    assert "build" not in sandbox.gate_commands_run


@pytest.mark.asyncio
async def test_unconfigured_gate_is_a_protocol_violation():
    with pytest.raises(ProtocolViolation):
        await run_gate(FakeSandbox(), GateName.LINT, [])


@pytest.mark.asyncio
async def test_gate_output_keeps_the_tail():
    sandbox = FakeSandbox(gate_outcome=lambda attempt, gate: (1, "noise\n" * 100 + "FINAL ERROR"))

    result = await run_gate(sandbox, GateName.TYPECHECK, GATE_COMMANDS["typecheck"], limit=50)

    assert result.output.startswith("[truncated]\n")
    assert result.output.endswith("FINAL ERROR")


def test_truncate_tail():
    assert truncate_tail("short", limit=10) == "short"
    assert truncate_tail("abcdefghij", limit=4) == "[truncated]\nghij"
