"""Analysis phase: map the feature request onto the codebase."""

from __future__ import annotations

from typing import Any

from featureforge.agent.memory import format_memories_for_prompt
from featureforge.agent.prompts import ANALYSIS_SYSTEM_PROMPT, format_analysis_prompt
from featureforge.durable.step import StepContext
from featureforge.pipeline.orchestrator import run_orchestrator
from featureforge.runtime import PipelineDeps
from featureforge.schemas import AnalysisOutput, MemoryRecord, Phase


async def analysis_phase(deps: PipelineDeps, step: StepContext, payload: dict[str, Any]) -> AnalysisOutput:
    memories = [MemoryRecord.model_validate(m) for m in payload.get("memories", [])]
    prompt = format_analysis_prompt(
        prompt=payload["prompt"],
        repo_url=payload["repo_url"],
        branch=payload["branch"],
        memories=format_memories_for_prompt(memories),
    )
    return await run_orchestrator(
        deps,
        step,
        payload,
        phase=Phase.ANALYSIS,
        system=ANALYSIS_SYSTEM_PROMPT,
        prompt=prompt,
        output_model=AnalysisOutput,
    )
