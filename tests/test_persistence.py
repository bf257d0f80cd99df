"""Replay-safe persistence: idempotent creation, terminal updates, memory appends."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta, timezone

import pytest

from featureforge.database.models import AgentInvocation, FeatureRun, SandboxRecord
from featureforge.schemas import (
    ApprovalRequest,
    ApprovalResponse,
    ChoiceOption,
    ChoiceRequest,
    ChoiceResponse,
    MemoryKind,
    MemoryRecord,
    Phase,
    PhaseStatus,
    SandboxStatus,
)


@pytest.mark.asyncio
async def test_create_feature_run_twice_yields_one_row(store):
    run = FeatureRun(id="run-x", prompt="Add dark mode toggle", repo_url="org/app")

    first = await store.create_feature_run(run)
    second = await store.create_feature_run(
        FeatureRun(id="run-x", prompt="something else", repo_url="org/other")
    )

    assert first == second == "run-x"
    stored = await store.get_feature_run("run-x")
    assert stored.prompt == "Add dark mode toggle"
    assert stored.current_phase == Phase.ANALYSIS.value


@pytest.mark.asyncio
async def test_create_records_are_idempotent(store, feature_run):
    assert await store.create_phase_result("phase-1", feature_run, Phase.ANALYSIS) == "phase-1"
    assert len(await store.list_phase_results(feature_run)) == 1

    invocation = AgentInvocation(
        id="inv-1",
        phase_result_id="phase-1",
        agent_type="orchestrator",
        model_id="fake/model",
        system_prompt="system",
    )
    await store.create_agent_invocation(invocation)
    await store.create_agent_invocation(invocation)
    assert len(await store.load_invocation_tree("phase-1")) == 1

    request = ApprovalRequest(message="Proceed?")
    await store.create_cta_event("cta-1", run_id=feature_run, phase_result_id="phase-1", request=request)
    await store.create_cta_event("cta-1", run_id=feature_run, phase_result_id="phase-1", request=request)
    assert len(await store.list_cta_events(feature_run)) == 1

    record = SandboxRecord(id="sbx-1", repo_url="org/app")
    await store.create_sandbox_record(record)
    assert await store.create_sandbox_record(SandboxRecord(id="sbx-1", repo_url="org/app")) == "sbx-1"


@pytest.mark.asyncio
async def test_phase_result_terminal_updates_are_noops(store, feature_run):
    assert await store.pass_phase_result("phase-1", {"phase": "analysis", "feasibility_assessment": "ok"})
    assert not await store.pass_phase_result("phase-1", {"phase": "analysis", "feasibility_assessment": "late"})
    assert not await store.fail_phase_result("phase-1", "too late")

    row = await store.get_phase_result("phase-1")
    assert row.status == PhaseStatus.PASSED.value
    assert row.output["feasibility_assessment"] == "ok"
    assert row.error_message is None
    assert row.completed_at is not None


@pytest.mark.asyncio
async def test_failed_phase_result_keeps_output(store, feature_run):
    assert await store.fail_phase_result("phase-1", "gates failing", {"attempts": [1, 2]})

    row = await store.get_phase_result("phase-1")
    assert row.status == PhaseStatus.FAILED.value
    assert row.error_message == "gates failing"
    assert row.output == {"attempts": [1, 2]}


@pytest.mark.asyncio
async def test_advance_phase_never_regresses_or_skips(store, feature_run):
    assert not await store.advance_phase(feature_run, Phase.JUDGING)
    assert await store.advance_phase(feature_run, Phase.APPROACHES)
    # Replaying the same advance is a no-op
    assert not await store.advance_phase(feature_run, Phase.APPROACHES)
    assert not await store.advance_phase(feature_run, Phase.ANALYSIS)

    run = await store.get_feature_run(feature_run)
    assert run.current_phase == Phase.APPROACHES.value


@pytest.mark.asyncio
async def test_full_progression_sets_completed_at(store, feature_run):
    for phase in (Phase.APPROACHES, Phase.JUDGING, Phase.IMPLEMENTATION, Phase.PR, Phase.COMPLETED):
        assert await store.advance_phase(feature_run, phase)

    run = await store.get_feature_run(feature_run)
    assert run.current_phase == Phase.COMPLETED.value
    assert run.completed_at is not None
    assert not await store.fail_feature_run(feature_run, "too late")


@pytest.mark.asyncio
async def test_failed_run_cannot_advance(store, feature_run):
    assert await store.fail_feature_run(feature_run, "sandbox gone")
    assert not await store.advance_phase(feature_run, Phase.APPROACHES)
    assert not await store.fail_feature_run(feature_run, "second failure")

    run = await store.get_feature_run(feature_run)
    assert run.current_phase == Phase.FAILED.value
    assert run.error_message == "sandbox gone"


@pytest.mark.asyncio
async def test_concurrent_memory_appends_are_not_lost(store, feature_run):
    security = MemoryRecord(phase=Phase.JUDGING, kind=MemoryKind.CONSTRAINT, content="Sanitize theme names")
    bugs = MemoryRecord(phase=Phase.JUDGING, kind=MemoryKind.INSIGHT, content="Toggle state lives in context")
    perf = MemoryRecord(phase=Phase.JUDGING, kind=MemoryKind.DECISION, content="Persist in localStorage")

    await asyncio.gather(
        store.append_memories(feature_run, [security]),
        store.append_memories(feature_run, [bugs, perf]),
    )

    memories = await store.get_memories(feature_run)
    assert len(memories) == 3
    assert {m.content for m in memories} == {security.content, bugs.content, perf.content}


@pytest.mark.asyncio
async def test_append_keeps_existing_memories(store, feature_run):
    first = MemoryRecord(phase=Phase.ANALYSIS, kind=MemoryKind.INSIGHT, content="Uses CSS variables")
    second = MemoryRecord(phase=Phase.APPROACHES, kind=MemoryKind.DECISION, content="Use a context provider")

    await store.append_memories(feature_run, [first])
    await store.append_memories(feature_run, [second])
    await store.append_memories(feature_run, [])

    assert await store.get_memories(feature_run) == [first, second]


@pytest.mark.asyncio
async def test_complete_agent_invocation_once(store, feature_run):
    await store.create_agent_invocation(AgentInvocation(
        id="inv-1",
        phase_result_id="phase-1",
        agent_type="coder",
        model_id="fake/model",
        system_prompt="system",
    ))

    usage = {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
    assert await store.complete_agent_invocation(
        "inv-1", finish_reason="stop", output_text="done", usage=usage, steps=2, tool_calls=1
    )
    assert not await store.complete_agent_invocation(
        "inv-1", finish_reason="length", output_text="again", usage={}, steps=9, tool_calls=9
    )

    [node] = await store.load_invocation_tree("phase-1")
    assert node.finish_reason == "stop"
    assert node.total_tokens == 15
    assert node.steps == 2


@pytest.mark.asyncio
async def test_invocation_tree_rebuilds_forest(store, feature_run):
    def invocation(id: str, agent_type: str, parent: str | None = None) -> AgentInvocation:
        return AgentInvocation(
            id=id,
            phase_result_id="phase-1",
            parent_invocation_id=parent,
            agent_type=agent_type,
            model_id="fake/model",
            system_prompt="system",
        )

    await store.create_agent_invocation(invocation("orch", "orchestrator"))
    await store.create_agent_invocation(invocation("explorer-a", "explorer", parent="orch"))
    await store.create_agent_invocation(invocation("explorer-b", "explorer", parent="orch"))
    await store.create_agent_invocation(invocation("standalone", "explorer"))

    roots = await store.load_invocation_tree("phase-1")

    assert {root.id for root in roots} == {"orch", "standalone"}
    orchestrator = next(root for root in roots if root.id == "orch")
    assert sorted(child.id for child in orchestrator.children) == ["explorer-a", "explorer-b"]


@pytest.mark.asyncio
async def test_choice_cta_round_trip(store, feature_run):
    request = ChoiceRequest(
        prompt="Which approach?",
        options=[ChoiceOption(id="x", label="X"), ChoiceOption(id="y", label="Y")],
    )
    await store.create_cta_event("cta-1", run_id=feature_run, phase_result_id="phase-1", request=request)

    assert await store.complete_cta_event("cta-1", ChoiceResponse(selected_id="x"))
    assert not await store.timeout_cta_event("cta-1")

    event = await store.get_cta_event("cta-1")
    assert event.kind == "choice"
    assert event.request_options == [{"id": "x", "label": "X"}, {"id": "y", "label": "Y"}]
    assert event.response_selected_id == "x"
    assert event.responded_at is not None
    assert event.timed_out is False


@pytest.mark.asyncio
async def test_timed_out_cta_ignores_late_response(store, feature_run):
    await store.create_cta_event(
        "cta-1", run_id=feature_run, phase_result_id="phase-1", request=ApprovalRequest(message="Proceed?")
    )

    assert await store.timeout_cta_event("cta-1")
    assert not await store.complete_cta_event("cta-1", ApprovalResponse(approved=True))

    event = await store.get_cta_event("cta-1")
    assert event.timed_out is True
    assert event.response_approved is None
    assert event.responded_at is None


@pytest.mark.asyncio
async def test_sandbox_status_timestamps(store):
    await store.create_sandbox_record(SandboxRecord(id="sbx-1", repo_url="org/app"))

    assert await store.update_sandbox_status("sbx-1", SandboxStatus.RUNNING)
    assert await store.update_sandbox_status("sbx-1", SandboxStatus.STOPPED)

    record = await store.get_sandbox_record("sbx-1")
    assert record.status == SandboxStatus.STOPPED.value
    assert record.started_at is not None
    assert record.stopped_at is not None
    assert record.started_at.tzinfo is not None


@pytest.mark.asyncio
async def test_timestamps_round_trip_as_aware_utc(store):
    local = timezone(timedelta(hours=2))
    await store.create_feature_run(
        FeatureRun(
            id="run-tz",
            prompt="Add dark mode toggle",
            repo_url="org/app",
            created_at=datetime(2026, 3, 1, 14, 30, tzinfo=local),
        )
    )
    await store.create_sandbox_record(
        SandboxRecord(id="sbx-naive", repo_url="org/app", created_at=datetime(2026, 3, 1, 9, 0))
    )

    run = await store.get_feature_run("run-tz")
    record = await store.get_sandbox_record("sbx-naive")

    assert run.created_at == datetime(2026, 3, 1, 12, 30, tzinfo=UTC)
    assert run.created_at.utcoffset() == timedelta(0)
    assert record.created_at == datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
