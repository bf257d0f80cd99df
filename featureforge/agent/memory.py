"""Cross-phase memory records.

Agents record insights, failures, decisions and constraints with the
``create_memory`` tool. Each call is appended to the run immediately with
the store's atomic append, so parallel agents (judges) never lose each
other's records. Later phases read the accumulated list into their prompts.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from featureforge.agent.tools import ToolRegistry, ToolSpec
from featureforge.database.repository import PipelineStore
from featureforge.schemas import MemoryKind, MemoryRecord, Phase, ToolCall


class CreateMemoryInput(BaseModel):
    kind: MemoryKind = Field(..., description="insight, failure, decision or constraint")
    content: str = Field(..., min_length=1, description="One self-contained note for later phases")


CREATE_MEMORY_SPEC = ToolSpec(
    "create_memory",
    "Record a note that every later phase will see: an insight about the codebase, "
    "a failure to avoid, a decision taken, or a constraint to respect.",
    CreateMemoryInput,
)

# Rendering order in prompts
_SECTIONS: list[tuple[MemoryKind, str]] = [
    (MemoryKind.INSIGHT, "Insights"),
    (MemoryKind.DECISION, "Decisions"),
    (MemoryKind.CONSTRAINT, "Constraints"),
    (MemoryKind.FAILURE, "Failures"),
]


def add_memory_tool(
    registry: ToolRegistry,
    store: PipelineStore,
    run_id: str,
    phase: Phase,
) -> ToolRegistry:
    async def _create_memory(args: CreateMemoryInput, call: ToolCall) -> dict:
        record = MemoryRecord(phase=phase, kind=args.kind, content=args.content)
        await store.append_memories(run_id, [record])
        return {"recorded": True, "kind": args.kind.value}

    return registry.add(CREATE_MEMORY_SPEC, _create_memory)


def format_memories_for_prompt(memories: list[MemoryRecord]) -> str:
    """Render memory records as a prompt section, grouped by kind."""
    if not memories:
        return ""

    md = "## Memory Records from Previous Phases\n"
    for kind, title in _SECTIONS:
        records = [m for m in memories if m.kind == kind]
        if not records:
            continue
        md += f"\n### {title}\n"
        for record in records:
            md += f"- [{record.phase.value}] {record.content}\n"
    return md
