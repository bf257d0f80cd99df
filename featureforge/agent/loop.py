"""Generic think -> dispatch -> inject agent loop.

One invocation of ``run_agent_loop`` is one bounded conversation between a
model and a tool set:
1. think: one model call over the accumulated history, memoized as a step
2. stop when the model reports ``finish_reason == "stop"``
3. otherwise append the assistant message, dispatch every tool call
   concurrently (each dispatch memoized) and inject all results as one tool
   message in emission order
4. after ``max_steps`` think steps, return the last partial text

``on_tool_call`` is the only customization point; phases bind it to file
tools, explorer spawning, human feedback or memory persistence.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from uuid import uuid4

from pydantic import BaseModel, Field

from featureforge.agent.tools import ToolSpec
from featureforge.database.models import AgentInvocation
from featureforge.database.repository import PipelineStore
from featureforge.durable.step import StepContext
from featureforge.llm.base import AgentModel
from featureforge.schemas import AgentType, LLMMessage, ToolCall, ToolResultPart


logger = logging.getLogger(__name__)

OnToolCall = Callable[[ToolCall], Awaitable[Any]]


class AgentLoopResult(BaseModel):
    """Outcome of one agent invocation."""
    text: str = ""
    step_count: int = 0
    finish_reason: str = "length"
    tool_call_count: int = 0
    usage: dict[str, int] = Field(default_factory=dict)

    @property
    def completed(self) -> bool:
        """False when the step budget ran out before the model stopped."""
        return self.finish_reason == "stop"


class ModelTurn(BaseModel):
    """Memoized result of one think step."""
    text: str = ""
    finish_reason: str = "stop"
    tool_calls: list[ToolCall] = Field(default_factory=list)
    assistant_message: LLMMessage
    usage: dict[str, int] = Field(default_factory=dict)


@dataclass
class InvocationSpec:
    """Identity of the AgentInvocation row a loop records into."""
    id: str
    phase_result_id: str
    agent_type: AgentType
    parent_invocation_id: str | None = None


async def new_id(step: StepContext, key: str) -> str:
    """Generate an id once per key so replays reuse it."""
    return await step.run(key, lambda: str(uuid4()))


def parse_tool_calls(raw_calls: list[dict[str, Any]] | None, step_index: int) -> list[ToolCall]:
    """Convert OpenAI-style tool calls into ToolCall models.

    Arguments that are not valid JSON are passed through under ``_raw`` so
    input validation reports them back to the model.
    """
    calls: list[ToolCall] = []
    for index, raw in enumerate(raw_calls or []):
        function = raw.get("function") or {}
        arguments = function.get("arguments") or "{}"
        if isinstance(arguments, str):
            try:
                parsed = json.loads(arguments)
            except json.JSONDecodeError:
                parsed = {"_raw": arguments}
        else:
            parsed = arguments
        if not isinstance(parsed, dict):
            parsed = {"_raw": parsed}
        calls.append(ToolCall(
            id=raw.get("id") or f"call_{step_index}_{index}",
            name=function.get("name", ""),
            input=parsed,
        ))
    return calls


async def _think(
    model: AgentModel,
    system: str,
    messages: list[LLMMessage],
    tools: list[dict[str, Any]],
    step_index: int,
) -> ModelTurn:
    response = await model.complete(system, messages, tools or None)
    calls = parse_tool_calls(response.tool_calls, step_index)
    assistant = LLMMessage(
        role="assistant",
        content=response.content or "",
        tool_calls=[
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.input)},
            }
            for call in calls
        ] or None,
    )
    return ModelTurn(
        text=response.content or "",
        finish_reason=response.finish_reason or "stop",
        tool_calls=calls,
        assistant_message=assistant,
        usage=response.usage,
    )


def _add_usage(total: dict[str, int], usage: dict[str, int]) -> None:
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        total[key] = total.get(key, 0) + int(usage.get(key, 0))


async def run_agent_loop(
    step: StepContext,
    model: AgentModel,
    system: str,
    initial_messages: list[LLMMessage],
    tools: list[ToolSpec],
    max_steps: int,
    on_tool_call: OnToolCall,
    *,
    store: PipelineStore | None = None,
    invocation: InvocationSpec | None = None,
) -> AgentLoopResult:
    """Run one bounded agent invocation.

    Args:
        step: Step context; every key is local to this loop's namespace
        model: Model bound to the agent's route
        system: System prompt
        initial_messages: Conversation seed (usually one user message)
        tools: Tools advertised to the model
        max_steps: Maximum number of think steps
        on_tool_call: Handler returning a JSON-able result for one call
        store: Persistence for the AgentInvocation row
        invocation: Identity of the row; recording is skipped when None

    Returns:
        AgentLoopResult; ``completed`` is False when the budget ran out
    """
    record = store is not None and invocation is not None
    if record:
        await step.run("invocation-create", lambda: store.create_agent_invocation(AgentInvocation(
            id=invocation.id,
            phase_result_id=invocation.phase_result_id,
            parent_invocation_id=invocation.parent_invocation_id,
            agent_type=invocation.agent_type.value,
            model_id=model.model_id,
            system_prompt=system,
            input_messages=[m.model_dump(mode="json", exclude_none=True) for m in initial_messages],
        )))

    messages = list(initial_messages)
    tool_definitions = [spec.to_openai() for spec in tools]
    result = AgentLoopResult()

    for index in range(max_steps):
        turn = ModelTurn.model_validate(await step.run(
            f"think-{index}",
            lambda: _think(model, system, messages, tool_definitions, index),
        ))
        result.step_count = index + 1
        result.text = turn.text
        result.finish_reason = turn.finish_reason
        _add_usage(result.usage, turn.usage)

        if turn.finish_reason == "stop":
            break

        messages.append(turn.assistant_message)
        if not turn.tool_calls:
            continue

        result.tool_call_count += len(turn.tool_calls)
        calls = [
            call.model_copy(update={"step_key": f"tool-{index}-{position}"})
            for position, call in enumerate(turn.tool_calls)
        ]
        outputs = await step.gather(*(
            step.run(call.step_key, lambda call=call: on_tool_call(call), max_attempts=1)
            for call in calls
        ))
        # gather preserves emission order regardless of completion order
        messages.append(LLMMessage(
            role="tool",
            content=None,
            tool_results=[
                ToolResultPart(tool_call_id=call.id, tool_name=call.name, output=output)
                for call, output in zip(turn.tool_calls, outputs)
            ],
        ))
    else:
        logger.warning(
            f"[{step.workflow_id}] Agent loop exhausted {max_steps} steps "
            f"without stopping (last finish reason: {result.finish_reason})"
        )

    if record:
        await step.run("invocation-complete", lambda: store.complete_agent_invocation(
            invocation.id,
            finish_reason=result.finish_reason,
            output_text=result.text,
            usage=result.usage,
            steps=result.step_count,
            tool_calls=result.tool_call_count,
        ))
    return result
