"""Durable step substrate: memoization, retries, waits, replay."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from featureforge.durable.engine import WorkflowEngine
from featureforge.durable.step import WorkflowSuspended, to_json
from featureforge.errors import ModelCallError, ProtocolViolation
from featureforge.schemas import MemoryKind, MemoryRecord, Phase


@pytest.mark.asyncio
async def test_completed_steps_are_not_rerun_on_replay(engine, run_workflow):
    executions: list[str] = []

    async def workflow(step, payload):
        first = await step.run("first", lambda: executions.append("first") or {"value": 1})
        event = await step.wait_for_event("wait", "go", "corr-1", timedelta(hours=1))
        second = await step.run("second", lambda: executions.append("second") or 2)
        return {"first": first, "event": event, "second": second}

    run = await run_workflow(workflow)
    assert run.status == "suspended"
    assert executions == ["first"]

    resumed = await engine.deliver_event("go", {"ok": True}, correlation_id="corr-1")
    assert resumed == ["wf-test"]

    run = await engine.get_run("wf-test")
    assert run.status == "completed"
    assert run.output == {"first": {"value": 1}, "event": {"ok": True}, "second": 2}
    assert executions == ["first", "second"]


@pytest.mark.asyncio
async def test_step_returns_json_form_on_first_run(run_workflow):
    async def workflow(step, payload):
        record = await step.run("record", lambda: MemoryRecord(
            phase=Phase.ANALYSIS, kind=MemoryKind.INSIGHT, content="note"
        ))
        return {"is_dict": isinstance(record, dict), "kind": record["kind"]}

    run = await run_workflow(workflow)
    assert run.output == {"is_dict": True, "kind": "insight"}


def test_json_form_of_models_dates_and_enums():
    value = {
        "record": MemoryRecord(phase=Phase.ANALYSIS, kind=MemoryKind.INSIGHT, content="note"),
        "at": datetime(2026, 1, 1, 12, 0, tzinfo=UTC),
        "phase": Phase.JUDGING,
        "pair": (1, 2),
    }

    assert to_json(value) == {
        "record": {"phase": "analysis", "kind": "insight", "content": "note"},
        "at": "2026-01-01T12:00:00Z",
        "phase": "judging",
        "pair": [1, 2],
    }


@pytest.mark.asyncio
async def test_transient_failures_are_retried(run_workflow):
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ModelCallError("provider unavailable")
        return "ok"

    async def workflow(step, payload):
        return await step.run("flaky", flaky)

    run = await run_workflow(workflow)
    assert run.status == "completed"
    assert run.output == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_retries_stop_at_max_attempts(run_workflow):
    attempts = []

    async def always_down():
        attempts.append(1)
        raise ModelCallError("provider unavailable")

    async def workflow(step, payload):
        return await step.run("down", always_down)

    run = await run_workflow(workflow)
    assert run.status == "failed"
    assert "provider unavailable" in run.error_message
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_non_retriable_errors_fail_immediately(run_workflow):
    attempts = []

    def corrupt():
        attempts.append(1)
        raise ProtocolViolation("malformed response")

    async def workflow(step, payload):
        return await step.run("corrupt", corrupt)

    run = await run_workflow(workflow)
    assert run.status == "failed"
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_max_attempts_override(run_workflow):
    attempts = []

    def flaky():
        attempts.append(1)
        raise ModelCallError("provider unavailable")

    async def workflow(step, payload):
        return await step.run("once", flaky, max_attempts=1)

    run = await run_workflow(workflow)
    assert run.status == "failed"
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_duplicate_key_in_one_execution_is_rejected(run_workflow):
    async def workflow(step, payload):
        await step.run("same", lambda: 1)
        await step.run("same", lambda: 2)

    run = await run_workflow(workflow)
    assert run.status == "failed"
    assert "used twice" in run.error_message


@pytest.mark.asyncio
async def test_wait_times_out_after_deadline(engine, clock, run_workflow):
    async def workflow(step, payload):
        event = await step.wait_for_event("wait", "cta.responded", "cta-1", timedelta(hours=1))
        return {"timed_out": event is None}

    run = await run_workflow(workflow)
    assert run.status == "suspended"
    assert run.wake_at == clock.now + timedelta(hours=1)

    # Not due yet
    assert await engine.tick() == []

    clock.advance(timedelta(hours=2))
    assert await engine.tick() == ["wf-test"]

    run = await engine.get_run("wf-test")
    assert run.status == "completed"
    assert run.output == {"timed_out": True}


@pytest.mark.asyncio
async def test_event_for_other_correlation_does_not_resume(engine, run_workflow):
    async def workflow(step, payload):
        return await step.wait_for_event("wait", "cta.responded", "cta-1", timedelta(hours=1))

    await run_workflow(workflow)
    assert await engine.deliver_event("cta.responded", {"x": 1}, correlation_id="cta-2") == []
    assert (await engine.get_run("wf-test")).status == "suspended"


@pytest.mark.asyncio
async def test_event_arriving_before_wait_is_seen(engine, run_workflow):
    await engine.record_event("evt-1", "go", {"early": True}, "corr-1")

    async def workflow(step, payload):
        return await step.wait_for_event("wait", "go", "corr-1", timedelta(hours=1))

    run = await run_workflow(workflow)
    assert run.status == "completed"
    assert run.output == {"early": True}


@pytest.mark.asyncio
async def test_send_event_publishes_once_across_replays(engine, run_workflow):
    published = []

    async def subscriber(name, data):
        published.append((name, data))

    engine.subscribe(subscriber)

    async def workflow(step, payload):
        await step.send_event("announce", "cta.requested", {"cta_id": "cta-1"}, correlation_id="cta-1")
        return await step.wait_for_event("wait", "go", "corr-1", timedelta(hours=1))

    await run_workflow(workflow)
    await engine.resume("wf-test")
    await engine.deliver_event("go", {}, correlation_id="corr-1")

    assert published == [("cta.requested", {"cta_id": "cta-1"})]


@pytest.mark.asyncio
async def test_invoke_memoizes_child_result(engine, run_workflow):
    child_runs = []

    async def child(step, payload):
        child_runs.append(payload["n"])
        value = await step.run("square", lambda: payload["n"] ** 2)
        return {"square": value}

    async def workflow(step, payload):
        result = await step.invoke("child", child, {"n": 4})
        await step.wait_for_event("wait", "go", "corr-1", timedelta(hours=1))
        return result

    await run_workflow(workflow)
    await engine.deliver_event("go", {}, correlation_id="corr-1")

    run = await engine.get_run("wf-test")
    assert run.output == {"square": 16}
    assert child_runs == [4]


@pytest.mark.asyncio
async def test_gather_raises_errors_before_suspensions(run_workflow):
    async def workflow(step, payload):
        async def waits():
            return await step.wait_for_event("wait", "go", "corr-1", timedelta(hours=1))

        def malformed_gate():
            raise ProtocolViolation("bad gate")

        async def breaks():
            return await step.run("broken", malformed_gate)

        return await step.gather(waits(), breaks())

    run = await run_workflow(workflow)
    assert run.status == "failed"
    assert "bad gate" in run.error_message


@pytest.mark.asyncio
async def test_gather_suspends_after_every_branch_settles(engine, run_workflow):
    finished = []

    async def workflow(step, payload):
        async def waits():
            return await step.wait_for_event("wait", "go", "corr-1", timedelta(hours=1))

        async def works():
            value = await step.run("work", lambda: finished.append("work") or "done")
            return value

        return await step.gather(waits(), works())

    run = await run_workflow(workflow)
    assert run.status == "suspended"
    assert finished == ["work"]

    await engine.deliver_event("go", {"v": 1}, correlation_id="corr-1")
    run = await engine.get_run("wf-test")
    assert run.output == [{"v": 1}, "done"]
    assert finished == ["work"]


def test_suspension_is_not_an_exception():
    assert not issubclass(WorkflowSuspended, Exception)


class ProcessDied(BaseException):
    """Stands in for the driving process being killed mid-drive."""


def dies_once(executions: list[str]):
    died: list[bool] = []

    async def workflow(step, payload):
        a = await step.run("a", lambda: executions.append("a") or 1)
        if not died:
            died.append(True)
            raise ProcessDied()
        b = await step.run("b", lambda: executions.append("b") or 2)
        return a + b

    return workflow


@pytest.mark.asyncio
async def test_orphaned_run_is_recovered_once_its_lease_expires(engine, clock, run_workflow):
    executions: list[str] = []

    with pytest.raises(ProcessDied):
        await run_workflow(dies_once(executions))
    assert (await engine.get_run("wf-test")).status == "running"

    # Lease still live
    assert await engine.tick() == []

    clock.advance(timedelta(days=40))
    assert await engine.tick() == ["wf-test"]

    run = await engine.get_run("wf-test")
    assert run.status == "completed"
    assert run.output == 3
    assert run.lease_owner is None
    assert executions == ["a", "b"]


@pytest.mark.asyncio
async def test_live_lease_keeps_other_engines_out(engine, session_factory, clock, run_workflow):
    executions: list[str] = []
    workflow = dies_once(executions)
    with pytest.raises(ProcessDied):
        await run_workflow(workflow)

    other = WorkflowEngine(session_factory, clock=clock, step_backoff_seconds=0.0)
    other.register("under-test", workflow)

    assert (await other.resume("wf-test")).status == "running"
    assert await other.recover() == []
    assert executions == ["a"]

    clock.advance(timedelta(minutes=6))
    assert await other.recover() == ["wf-test"]
    assert (await other.get_run("wf-test")).status == "completed"
    assert executions == ["a", "b"]


@pytest.mark.asyncio
async def test_event_arriving_during_drive_is_picked_up(engine, run_workflow):
    async def workflow(step, payload):
        try:
            return await step.wait_for_event("wait", "go", "corr-1", timedelta(days=30))
        except WorkflowSuspended:
            # The event lands after the wait looked for it
            await engine.record_event("evt-late", "go", {"late": True}, "corr-1")
            raise

    run = await run_workflow(workflow)

    assert run.status == "completed"
    assert run.output == {"late": True}
