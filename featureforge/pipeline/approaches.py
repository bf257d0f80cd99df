"""Approaches phase: design candidate implementations of the feature."""

from __future__ import annotations

from typing import Any

from featureforge.agent.memory import format_memories_for_prompt
from featureforge.agent.prompts import APPROACHES_SYSTEM_PROMPT, format_approaches_prompt
from featureforge.durable.step import StepContext
from featureforge.errors import PhaseFailed
from featureforge.pipeline.orchestrator import run_orchestrator
from featureforge.runtime import PipelineDeps
from featureforge.schemas import AnalysisOutput, ApproachesOutput, MemoryRecord, Phase


async def approaches_phase(deps: PipelineDeps, step: StepContext, payload: dict[str, Any]) -> ApproachesOutput:
    memories = [MemoryRecord.model_validate(m) for m in payload.get("memories", [])]
    analysis = AnalysisOutput.model_validate(payload["analysis"])
    prompt = format_approaches_prompt(
        prompt=payload["prompt"],
        analysis=analysis.to_markdown(),
        memories=format_memories_for_prompt(memories),
    )
    output = await run_orchestrator(
        deps,
        step,
        payload,
        phase=Phase.APPROACHES,
        system=APPROACHES_SYSTEM_PROMPT,
        prompt=prompt,
        output_model=ApproachesOutput,
    )

    ids = [approach.id for approach in output.approaches]
    if len(set(ids)) != len(ids):
        # Choice options are addressed by id
        raise PhaseFailed(f"Approach ids are not unique: {ids}", output=output.model_dump(mode="json"))
    return output
