"""Implementation phase: bounded coder attempts against the quality gates.

Each attempt:
1. resets the work branch to the base, discarding the previous attempt
2. invokes a brand-new coder loop (no shared conversation); from attempt 2
   on, the prompt quotes the previous attempt's failing gate output
3. records the touched files and runs the gates

The first attempt whose four gates pass ends the loop; its diff against the
base is computed and committed. Exhausting the attempts fails the phase with
the full per-attempt history attached.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Any

from featureforge.agent.loop import InvocationSpec, new_id, run_agent_loop
from featureforge.agent.memory import add_memory_tool, format_memories_for_prompt
from featureforge.agent.prompts import CODER_SYSTEM_PROMPT, format_coder_prompt, format_retry_context
from featureforge.agent.tools import ToolRegistry, add_read_tools, add_write_tools
from featureforge.durable.step import StepContext
from featureforge.errors import PhaseFailed
from featureforge.pipeline.pr import generate_pr_title
from featureforge.pipeline.quality_gates import run_all_gates
from featureforge.runtime import PipelineDeps
from featureforge.schemas import (
    AgentType,
    AnalysisOutput,
    Approach,
    FileChange,
    GateResult,
    ImplementationAttempt,
    ImplementationOutput,
    LLMMessage,
    MemoryRecord,
    Phase,
)
from featureforge.tools.git_ops import changed_files, commit_all, diff_against_base, reset_branch


logger = logging.getLogger(__name__)


async def coder_workflow(deps: PipelineDeps, step: StepContext, payload: dict[str, Any]) -> dict[str, Any]:
    """One fresh coder invocation with read and write tools."""
    sandbox = await deps.sandboxes.connect(payload["sandbox_id"])
    registry = add_read_tools(ToolRegistry(), sandbox)
    add_write_tools(registry, sandbox, deps.settings.sandbox_allowed_commands)
    add_memory_tool(registry, deps.store, payload["run_id"], Phase.IMPLEMENTATION)
    invocation_id = await new_id(step, "invocation-id")

    result = await run_agent_loop(
        step,
        deps.models.for_agent(AgentType.CODER),
        CODER_SYSTEM_PROMPT,
        [LLMMessage(role="user", content=payload["prompt"])],
        registry.specs,
        deps.settings.coder_max_steps,
        registry.dispatch,
        store=deps.store,
        invocation=InvocationSpec(
            id=invocation_id,
            phase_result_id=payload["phase_result_id"],
            agent_type=AgentType.CODER,
        ),
    )
    return {"summary": result.text, "completed": result.completed}


def _codebase_map(analysis: AnalysisOutput) -> str:
    return "\n".join(
        f"- `{entry.path}`: {entry.purpose}" + (f" ({entry.relevance})" if entry.relevance else "")
        for entry in analysis.codebase_map
    )


async def implementation_phase(
    deps: PipelineDeps,
    step: StepContext,
    payload: dict[str, Any],
) -> ImplementationOutput:
    run_id = payload["run_id"]
    base_branch = payload["branch"]
    work_branch = payload["work_branch"]
    approach = Approach.model_validate(payload["approach"])
    analysis = AnalysisOutput.model_validate(payload["analysis"])
    conditions: list[str] = payload.get("conditions", [])
    memories = format_memories_for_prompt([MemoryRecord.model_validate(m) for m in payload.get("memories", [])])
    settings = deps.settings
    max_attempts = settings.max_coder_attempts

    sandbox = await deps.sandboxes.connect(payload["sandbox_id"])
    coder = partial(coder_workflow, deps)
    attempts: list[ImplementationAttempt] = []
    retry_context = ""

    for n in range(1, max_attempts + 1):
        logger.info(f"[{run_id}] Coder attempt {n}/{max_attempts}")
        await step.run(f"reset-branch-{n}", lambda: reset_branch(sandbox, work_branch, base_branch))

        coder_result = await step.invoke(f"coder-attempt-{n}", coder, {
            "run_id": run_id,
            "phase_result_id": payload["phase_result_id"],
            "sandbox_id": payload["sandbox_id"],
            "prompt": format_coder_prompt(
                prompt=payload["prompt"],
                approach=approach.to_markdown(),
                codebase_map=_codebase_map(analysis),
                conditions=conditions,
                memories=memories,
                retry_context=retry_context,
            ),
        })
        touched = await step.run(f"files-touched-{n}", lambda: changed_files(sandbox))
        gates = await step.run(
            f"quality-gates-{n}",
            lambda: run_all_gates(sandbox, settings.gate_commands, n, settings.gate_output_limit),
        )

        attempt = ImplementationAttempt(
            attempt=n,
            coder_summary=coder_result["summary"],
            files_touched=touched,
            gate_results=[GateResult.model_validate(g) for g in gates],
        )
        attempts.append(attempt)
        if attempt.all_passed:
            break

        failing = attempt.gate_results[-1]
        logger.warning(f"[{run_id}] Attempt {n} failed the {failing.gate.value} gate")
        retry_context = format_retry_context(n + 1, max_attempts, failing.gate.value, failing.output)

    last = attempts[-1]
    if not last.all_passed:
        output = ImplementationOutput(
            branch=work_branch,
            base_branch=base_branch,
            gate_results=last.gate_results,
            attempts=attempts,
            total_coder_attempts=len(attempts),
            conditions_addressed=[],
            all_gates_passed=False,
        )
        raise PhaseFailed(
            f"Quality gates still failing after {len(attempts)} coder attempts",
            output=output.model_dump(mode="json"),
        )

    changes = await step.run("diff", lambda: diff_against_base(sandbox, base_branch))
    await step.run("commit", lambda: commit_all(sandbox, generate_pr_title(payload["prompt"])))
    logger.info(f"[{run_id}] Implementation passed on attempt {last.attempt}")

    return ImplementationOutput(
        branch=work_branch,
        base_branch=base_branch,
        files_changed=[FileChange.model_validate(c) for c in changes],
        gate_results=last.gate_results,
        attempts=attempts,
        total_coder_attempts=len(attempts),
        conditions_addressed=conditions,
        all_gates_passed=True,
    )
