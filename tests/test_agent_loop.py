"""Think -> dispatch -> inject loop: termination, ordering, replay, recording."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from fakes import FakeSandbox, ScriptedModel, calls, final
from featureforge.agent.loop import InvocationSpec, parse_tool_calls, run_agent_loop
from featureforge.agent.output import parse_agent_output
from featureforge.agent.tools import ToolRegistry, add_read_tools, add_write_tools
from featureforge.errors import OutputParseError
from featureforge.schemas import AgentType, AnalysisOutput, JudgeVerdict, LLMMessage


def user(text: str) -> list[LLMMessage]:
    return [LLMMessage(role="user", content=text)]


@pytest.mark.asyncio
async def test_loop_stops_when_model_stops(run_workflow):
    sandbox = FakeSandbox()
    registry = add_read_tools(ToolRegistry(), sandbox)
    model = ScriptedModel([
        calls(("c1", "read", {"path": "src/app.ts"})),
        final("The app exports a constant."),
    ])

    async def workflow(step, payload):
        result = await run_agent_loop(step, model, "system", user("Explore"), registry.specs, 10, registry.dispatch)
        return result.model_dump()

    run = await run_workflow(workflow)

    assert run.output["text"] == "The app exports a constant."
    assert run.output["step_count"] == 2
    assert run.output["finish_reason"] == "stop"
    assert run.output["tool_call_count"] == 1

    _, messages, tools = model.calls[1]
    assert [m.role for m in messages] == ["user", "assistant", "tool"]
    [part] = messages[-1].tool_results
    assert part.tool_call_id == "c1"
    assert part.output == {"path": "src/app.ts", "content": "export const app = 1;\n"}
    assert {t["function"]["name"] for t in tools} == {"read", "glob", "grep"}


@pytest.mark.asyncio
async def test_loop_returns_partial_text_when_budget_runs_out(run_workflow):
    model = ScriptedModel(lambda system, messages: calls(("c", "noop", {}), text="still working"))

    async def on_tool_call(call):
        return {"ok": True}

    async def workflow(step, payload):
        result = await run_agent_loop(step, model, "system", user("Go"), [], 3, on_tool_call)
        return {"result": result.model_dump(), "completed": result.completed}

    run = await run_workflow(workflow)

    assert len(model.calls) == 3
    assert run.output["completed"] is False
    assert run.output["result"]["text"] == "still working"
    assert run.output["result"]["step_count"] == 3


@pytest.mark.asyncio
async def test_tool_results_keep_emission_order(run_workflow):
    model = ScriptedModel([
        calls(("a", "sleep", {"delay": 0.2}), ("b", "sleep", {"delay": 0.0}), ("c", "sleep", {"delay": 0.1})),
        final("done"),
    ])
    completed: list[str] = []

    async def on_tool_call(call):
        await asyncio.sleep(call.input["delay"])
        completed.append(call.id)
        return f"result-{call.id}"

    async def workflow(step, payload):
        await run_agent_loop(step, model, "system", user("Go"), [], 5, on_tool_call)

    await run_workflow(workflow)

    assert completed[-1] == "a"
    tool_message = model.calls[1][1][-1]
    assert [p.tool_call_id for p in tool_message.tool_results] == ["a", "b", "c"]
    assert [p.output for p in tool_message.tool_results] == ["result-a", "result-b", "result-c"]


@pytest.mark.asyncio
async def test_tools_are_not_redispatched_on_replay(engine, run_workflow):
    model = ScriptedModel([
        calls(("c1", "count", {}), ("c2", "wait", {})),
        final("done"),
    ])
    dispatched: list[str] = []

    async def workflow(step, payload):
        async def on_tool_call(call):
            dispatched.append(call.id)
            if call.name == "wait":
                return await step.wait_for_event("answer", "go", "corr-1", timedelta(hours=1))
            return "counted"

        result = await run_agent_loop(step, model, "system", user("Go"), [], 5, on_tool_call)
        return result.text

    run = await run_workflow(workflow)
    assert run.status == "suspended"

    await engine.deliver_event("go", {"answer": 42}, correlation_id="corr-1")

    run = await engine.get_run("wf-test")
    assert run.status == "completed"
    assert run.output == "done"
    # c1 ran once; c2 ran again on replay to collect its event
    assert sorted(dispatched) == ["c1", "c2", "c2"]
    assert len(model.calls) == 2
    assert model.calls[1][1][-1].tool_results[1].output == {"answer": 42}


@pytest.mark.asyncio
async def test_unknown_tool_and_invalid_input_answer_the_model(run_workflow):
    sandbox = FakeSandbox()
    registry = add_write_tools(add_read_tools(ToolRegistry(), sandbox), sandbox, ["npm"])
    model = ScriptedModel([
        calls(
            ("c1", "teleport", {}),
            ("c2", "read", {"start_line": 3}),
            ("c3", "bash", {"command": "rm -rf /"}),
            ("c4", "read", {"path": "missing.ts"}),
        ),
        final("done"),
    ])

    async def workflow(step, payload):
        await run_agent_loop(step, model, "system", user("Go"), registry.specs, 5, registry.dispatch)

    await run_workflow(workflow)

    outputs = [p.output for p in model.calls[1][1][-1].tool_results]
    assert outputs[0] == {"error": "unknown tool", "tool": "teleport"}
    assert outputs[1]["code"] == "INVALID_INPUT"
    assert outputs[2]["code"] == "COMMAND_NOT_ALLOWED"
    assert outputs[3]["code"] == "FILE_NOT_FOUND"


@pytest.mark.asyncio
async def test_loop_records_agent_invocation(store, feature_run, run_workflow):
    model = ScriptedModel([
        calls(("c1", "noop", {})),
        final("done", usage={"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}),
    ])

    async def on_tool_call(call):
        return None

    async def workflow(step, payload):
        await run_agent_loop(
            step, model, "system", user("Go"), [], 5, on_tool_call,
            store=store,
            invocation=InvocationSpec(id="inv-1", phase_result_id="phase-1", agent_type=AgentType.EXPLORER),
        )

    await run_workflow(workflow)

    [node] = await store.load_invocation_tree("phase-1")
    assert node.id == "inv-1"
    assert node.agent_type == "explorer"
    assert node.model_id == "fake/model"
    assert node.finish_reason == "stop"
    assert node.steps == 2
    assert node.tool_calls == 1
    assert node.total_tokens == 10


def test_parse_tool_calls_keeps_bad_arguments_for_validation():
    parsed = parse_tool_calls(
        [
            {"id": "x", "function": {"name": "read", "arguments": "{not json"}},
            {"function": {"name": "glob", "arguments": '{"pattern": "*.ts"}'}},
        ],
        step_index=4,
    )

    assert parsed[0].input == {"_raw": "{not json"}
    assert parsed[1].id == "call_4_1"
    assert parsed[1].input == {"pattern": "*.ts"}


def test_parse_agent_output_accepts_fenced_json():
    text = 'Here is my analysis:\n```json\n{"feasibility_assessment": "Fits well", "risks": ["none"]}\n```'

    output = parse_agent_output(text, AnalysisOutput)

    assert output.feasibility_assessment == "Fits well"
    assert output.risks == ["none"]


def test_parse_agent_output_applies_overrides():
    text = '{"criterion": "security", "verdict": "pass", "findings": []}'

    verdict = parse_agent_output(text, JudgeVerdict, criterion="bugs")

    assert verdict.criterion.value == "bugs"


def test_parse_agent_output_rejects_prose():
    with pytest.raises(OutputParseError) as exc:
        parse_agent_output("I could not finish the analysis.", AnalysisOutput)
    assert exc.value.raw_text == "I could not finish the analysis."
