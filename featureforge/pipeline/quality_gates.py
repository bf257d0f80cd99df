"""Quality gates run in the sandbox after each coder attempt.

Gates run in the fixed order typecheck -> lint -> test -> build and stop at
the first failure, so the cheapest signal comes first. A failing gate is a
normal result; only a command that cannot be dispatched raises.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from featureforge.errors import ProtocolViolation
from featureforge.schemas import GateName, GateResult, GateStatus
from featureforge.tools.sandbox import Sandbox


logger = logging.getLogger(__name__)

GATE_ORDER: list[GateName] = [GateName.TYPECHECK, GateName.LINT, GateName.TEST, GateName.BUILD]
MAX_OUTPUT_LENGTH = 8000


def truncate_tail(raw: str, limit: int = MAX_OUTPUT_LENGTH) -> str:
    """Keep the last ``limit`` characters, where failures are usually reported."""
    if len(raw) <= limit:
        return raw
    return f"[truncated]\n{raw[-limit:]}"


async def run_gate(
    sandbox: Sandbox,
    gate: GateName,
    command: list[str],
    attempt: int = 1,
    limit: int = MAX_OUTPUT_LENGTH,
) -> GateResult:
    """Run one gate command and capture its combined output.

    Raises:
        SandboxError: the command could not be dispatched
        ProtocolViolation: the gate is misconfigured or its result is malformed
    """
    if not command:
        raise ProtocolViolation(f"No command configured for quality gate '{gate.value}'")

    logger.info(f"[{sandbox.sandbox_id}] Running {gate.value} gate: {' '.join(command)}")
    result = await sandbox.run_command(command[0], command[1:])

    combined = "\n".join(part for part in (result.stdout, result.stderr) if part)
    try:
        gate_result = GateResult(
            gate=gate,
            status=GateStatus.PASSED if result.exit_code == 0 else GateStatus.FAILED,
            output=truncate_tail(combined, limit),
            attempt=attempt,
        )
    except ValidationError as e:
        raise ProtocolViolation(f"Malformed result for quality gate '{gate.value}': {e}") from e

    logger.info(
        f"[{sandbox.sandbox_id}] Gate {gate.value} {gate_result.status.value} "
        f"(exit {result.exit_code}, {len(combined)} chars of output)"
    )
    return gate_result


async def run_all_gates(
    sandbox: Sandbox,
    commands: dict[str, list[str]],
    attempt: int = 1,
    limit: int = MAX_OUTPUT_LENGTH,
) -> list[GateResult]:
    """Run every gate in order, stopping after the first failure.

    Returns:
        Results computed so far, the failing gate included
    """
    results: list[GateResult] = []
    for gate in GATE_ORDER:
        result = await run_gate(sandbox, gate, commands.get(gate.value, []), attempt, limit)
        results.append(result)
        if not result.passed:
            logger.warning(f"[{sandbox.sandbox_id}] Quality gate {gate.value} failed on attempt {attempt}, stopping")
            break
    return results
