"""Judging phase: five specialist judges in parallel, then synthesis.

Each judge is a read-only loop focused on one criterion. The verdicts are
merged deterministically:
1. any ``fail`` verdict -> rejected, with a rejection reason
2. otherwise any major finding -> approved_with_conditions, the conditions
   being the major findings' recommendations
3. otherwise -> approved

A rejected approach fails the phase with the synthesized output attached.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Any

from featureforge.agent.loop import InvocationSpec, new_id, run_agent_loop
from featureforge.agent.memory import add_memory_tool, format_memories_for_prompt
from featureforge.agent.output import parse_agent_output
from featureforge.agent.prompts import format_judge_prompt, format_judge_system_prompt
from featureforge.agent.tools import ToolRegistry, add_read_tools
from featureforge.durable.step import StepContext
from featureforge.errors import PhaseFailed
from featureforge.runtime import PipelineDeps
from featureforge.schemas import (
    AgentType,
    AnalysisOutput,
    Approach,
    Criterion,
    JudgeVerdict,
    JudgingOutput,
    LLMMessage,
    MemoryRecord,
    OverallVerdict,
    Phase,
    Severity,
    Verdict,
)


logger = logging.getLogger(__name__)

JUDGES: list[Criterion] = [
    Criterion.SECURITY,
    Criterion.BUGS,
    Criterion.COMPATIBILITY,
    Criterion.PERFORMANCE,
    Criterion.QUALITY,
]


def synthesize_verdicts(selected_approach_id: str, verdicts: list[JudgeVerdict]) -> JudgingOutput:
    """Merge specialist verdicts into one overall verdict."""
    failed = [v for v in verdicts if v.verdict == Verdict.FAIL]
    if failed:
        reasons = []
        for verdict in failed:
            critical = [f.description for f in verdict.findings if f.severity == Severity.CRITICAL]
            detail = "; ".join(critical) or verdict.overall_assessment or "failed review"
            reasons.append(f"[{verdict.criterion.value}] {detail}")
        return JudgingOutput(
            selected_approach_id=selected_approach_id,
            verdicts=verdicts,
            overall_verdict=OverallVerdict.REJECTED,
            rejection_reason="; ".join(reasons),
        )

    conditions: list[str] = []
    for verdict in verdicts:
        for finding in verdict.findings:
            if finding.severity != Severity.MAJOR:
                continue
            condition = finding.recommendation or finding.description
            if condition not in conditions:
                conditions.append(condition)

    if conditions:
        return JudgingOutput(
            selected_approach_id=selected_approach_id,
            verdicts=verdicts,
            overall_verdict=OverallVerdict.APPROVED_WITH_CONDITIONS,
            conditions=conditions,
        )
    return JudgingOutput(
        selected_approach_id=selected_approach_id,
        verdicts=verdicts,
        overall_verdict=OverallVerdict.APPROVED,
    )


async def judge_workflow(deps: PipelineDeps, step: StepContext, payload: dict[str, Any]) -> JudgeVerdict:
    """One specialist review of the selected approach."""
    criterion = Criterion(payload["criterion"])
    sandbox = await deps.sandboxes.connect(payload["sandbox_id"])
    registry = add_read_tools(ToolRegistry(), sandbox)
    add_memory_tool(registry, deps.store, payload["run_id"], Phase.JUDGING)
    invocation_id = await new_id(step, "invocation-id")

    result = await run_agent_loop(
        step,
        deps.models.for_agent(AgentType.JUDGE),
        format_judge_system_prompt(criterion),
        [LLMMessage(role="user", content=format_judge_prompt(
            criterion,
            prompt=payload["prompt"],
            approach=payload["approach"],
            analysis=payload["analysis"],
            memories=payload["memories"],
        ))],
        registry.specs,
        deps.settings.judge_max_steps,
        registry.dispatch,
        store=deps.store,
        invocation=InvocationSpec(
            id=invocation_id,
            phase_result_id=payload["phase_result_id"],
            agent_type=AgentType.JUDGE,
        ),
    )
    # The criterion is known here; never trust the model to echo it
    return parse_agent_output(result.text, JudgeVerdict, criterion=criterion.value)


async def judging_phase(deps: PipelineDeps, step: StepContext, payload: dict[str, Any]) -> JudgingOutput:
    run_id = payload["run_id"]
    approach = Approach.model_validate(payload["approach"])
    analysis = AnalysisOutput.model_validate(payload["analysis"])
    memories = format_memories_for_prompt([MemoryRecord.model_validate(m) for m in payload.get("memories", [])])
    judge = partial(judge_workflow, deps)

    shared = {
        "run_id": run_id,
        "phase_result_id": payload["phase_result_id"],
        "sandbox_id": payload["sandbox_id"],
        "prompt": payload["prompt"],
        "approach": approach.to_markdown(),
        "analysis": analysis.to_markdown(),
        "memories": memories,
    }

    logger.info(f"[{run_id}] Dispatching {len(JUDGES)} judges for approach {approach.id}")
    raw = await step.gather(*(
        step.invoke(f"judge-{criterion.value}", judge, {**shared, "criterion": criterion.value})
        for criterion in JUDGES
    ))
    verdicts = [JudgeVerdict.model_validate(v) for v in raw]

    output = synthesize_verdicts(approach.id, verdicts)
    logger.info(f"[{run_id}] Judging verdict: {output.overall_verdict.value}")
    if output.overall_verdict == OverallVerdict.REJECTED:
        raise PhaseFailed(
            f"Approach {approach.id} rejected: {output.rejection_reason}",
            output=output.model_dump(mode="json"),
        )
    return output
