"""Orchestrator agents and their explorer subagents.

The analysis and approaches phases are each one orchestrator loop with:
- read-only file tools over the run's sandbox
- spawn_subagent, a durable child invocation of an explorer loop
- request_human_feedback and create_memory

The orchestrator's final message is parsed into the phase's output model.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from featureforge.agent.cta import add_feedback_tool
from featureforge.agent.loop import InvocationSpec, new_id, run_agent_loop
from featureforge.agent.memory import add_memory_tool
from featureforge.agent.output import parse_agent_output
from featureforge.agent.prompts import EXPLORER_SYSTEM_PROMPT
from featureforge.agent.tools import ToolRegistry, ToolSpec, add_read_tools
from featureforge.durable.step import StepContext
from featureforge.runtime import PipelineDeps
from featureforge.schemas import AgentType, LLMMessage, Phase, ToolCall


logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


# =============================================================================
# Explorer
# =============================================================================

async def explorer_workflow(deps: PipelineDeps, step: StepContext, payload: dict[str, Any]) -> dict[str, Any]:
    """Read-only research loop answering one question about the codebase."""
    sandbox = await deps.sandboxes.connect(payload["sandbox_id"])
    registry = add_read_tools(ToolRegistry(), sandbox)
    invocation_id = await new_id(step, "invocation-id")

    result = await run_agent_loop(
        step,
        deps.models.for_agent(AgentType.EXPLORER),
        EXPLORER_SYSTEM_PROMPT,
        [LLMMessage(role="user", content=payload["prompt"])],
        registry.specs,
        deps.settings.explorer_max_steps,
        registry.dispatch,
        store=deps.store,
        invocation=InvocationSpec(
            id=invocation_id,
            phase_result_id=payload["phase_result_id"],
            agent_type=AgentType.EXPLORER,
            parent_invocation_id=payload.get("parent_invocation_id"),
        ),
    )
    return {"summary": result.text, "completed": result.completed, "steps": result.step_count}


class SpawnSubagentInput(BaseModel):
    prompt: str = Field(..., min_length=1, description="Detailed research question for the explorer")


SPAWN_SUBAGENT_SPEC = ToolSpec(
    "spawn_subagent",
    "Spawn an explorer subagent that researches the codebase (reads files, searches for "
    "patterns) and returns a written summary. Runs to completion before answering.",
    SpawnSubagentInput,
)


def add_spawn_tool(
    registry: ToolRegistry,
    deps: PipelineDeps,
    step: StepContext,
    *,
    sandbox_id: str,
    phase_result_id: str,
    parent_invocation_id: str,
) -> ToolRegistry:
    explorer = partial(explorer_workflow, deps)

    async def _spawn_subagent(args: SpawnSubagentInput, call: ToolCall) -> dict[str, Any]:
        return await step.invoke(f"explorer-{call.step_key or call.id}", explorer, {
            "prompt": args.prompt,
            "sandbox_id": sandbox_id,
            "phase_result_id": phase_result_id,
            "parent_invocation_id": parent_invocation_id,
        })

    return registry.add(SPAWN_SUBAGENT_SPEC, _spawn_subagent)


# =============================================================================
# Orchestrator
# =============================================================================

async def run_orchestrator(
    deps: PipelineDeps,
    step: StepContext,
    payload: dict[str, Any],
    *,
    phase: Phase,
    system: str,
    prompt: str,
    output_model: type[T],
) -> T:
    """Run one orchestrator loop and parse its final message.

    Raises:
        OutputParseError: the final message does not match ``output_model``
    """
    run_id = payload["run_id"]
    phase_result_id = payload["phase_result_id"]
    sandbox = await deps.sandboxes.connect(payload["sandbox_id"])
    invocation_id = await new_id(step, "invocation-id")

    registry = add_read_tools(ToolRegistry(), sandbox)
    add_spawn_tool(
        registry,
        deps,
        step,
        sandbox_id=payload["sandbox_id"],
        phase_result_id=phase_result_id,
        parent_invocation_id=invocation_id,
    )
    add_feedback_tool(
        registry,
        step,
        deps.store,
        run_id=run_id,
        phase_result_id=phase_result_id,
        invocation_id=invocation_id,
        timeout=deps.settings.cta_timeout,
    )
    add_memory_tool(registry, deps.store, run_id, phase)

    logger.info(f"[{run_id}] Starting {phase.value} orchestrator")
    result = await run_agent_loop(
        step,
        deps.models.for_agent(AgentType.ORCHESTRATOR),
        system,
        [LLMMessage(role="user", content=prompt)],
        registry.specs,
        deps.settings.orchestrator_max_steps,
        registry.dispatch,
        store=deps.store,
        invocation=InvocationSpec(
            id=invocation_id,
            phase_result_id=phase_result_id,
            agent_type=AgentType.ORCHESTRATOR,
        ),
    )
    if not result.completed:
        logger.warning(f"[{run_id}] {phase.value} orchestrator stopped early ({result.finish_reason})")

    return parse_agent_output(result.text, output_model)
