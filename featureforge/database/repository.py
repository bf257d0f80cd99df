"""Replay-safe persistence for runs, phases, invocations, CTAs and sandboxes.

Rules every operation follows:
- Creation is insert-or-ignore keyed by a caller-supplied id, so a replayed
  step never duplicates a row and never errors.
- Terminal updates only touch rows that are not terminal yet, so repeating
  them is a no-op. They return whether a row changed.
- Memory records are appended with a single storage-level concatenation,
  never read-modify-write, so concurrent appenders cannot lose records.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Iterable

from sqlalchemy import cast, func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel, select

from featureforge.database.models import (
    AgentInvocation,
    CtaEvent,
    FeatureRun,
    PhaseResult,
    SandboxRecord,
    utcnow,
)
from featureforge.database.session import SessionFactory, session_scope
from featureforge.errors import PersistenceError
from featureforge.schemas import (
    PHASE_ORDER,
    ApprovalRequest,
    ApprovalResponse,
    ChoiceRequest,
    ChoiceResponse,
    InvocationNode,
    MemoryRecord,
    Phase,
    PhaseStatus,
    SandboxStatus,
    TextRequest,
    TextResponse,
)


logger = logging.getLogger(__name__)

_TERMINAL_PHASES = (Phase.COMPLETED.value, Phase.FAILED.value)


async def insert_or_ignore(
    session: AsyncSession,
    row: SQLModel,
    index_elements: tuple[str, ...] = ("id",),
) -> bool:
    """Insert ``row`` unless a row with the same key exists.

    Returns:
        True if a row was inserted, False if it already existed
    """
    table = type(row)
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table)
    elif dialect == "sqlite":
        stmt = sqlite.insert(table)
    else:
        raise PersistenceError(f"Unsupported database dialect: {dialect}", retriable=False)

    values = row.model_dump()
    stmt = stmt.values(**values).on_conflict_do_nothing(index_elements=list(index_elements))
    result = await session.execute(stmt)
    return result.rowcount == 1


def _memory_append_expression(dialect: str, records: list[dict[str, Any]]) -> Any:
    if dialect == "postgresql":
        return FeatureRun.memories.op("||", return_type=JSONB)(cast(records, JSONB))
    # SQLite: '$[#]' addresses one past the end of the array
    args: list[Any] = []
    for record in records:
        args.extend(["$[#]", func.json(json.dumps(record))])
    return func.json_insert(FeatureRun.memories, *args)


class PipelineStore:
    """Persistence operations used by the pipeline, the API and the CLI."""

    def __init__(self, session_factory: SessionFactory):
        self._factory = session_factory

    @asynccontextmanager
    async def _scope(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with session_scope(self._factory) as session:
                yield session
        except IntegrityError as e:
            logger.error(f"{operation} violated a constraint: {e}")
            raise PersistenceError(f"{operation}: {e}", retriable=False) from e
        except SQLAlchemyError as e:
            logger.error(f"{operation} failed: {e}")
            raise PersistenceError(f"{operation}: {e}") from e

    async def _create(self, operation: str, row: SQLModel) -> str:
        async with self._scope(operation) as session:
            inserted = await insert_or_ignore(session, row)
        if not inserted:
            logger.info(f"{operation}: {row.id} already exists, skipping")
        return row.id

    # =========================================================================
    # Sandboxes
    # =========================================================================

    async def create_sandbox_record(self, record: SandboxRecord) -> str:
        return await self._create("create sandbox record", record)

    async def update_sandbox_status(self, sandbox_id: str, status: SandboxStatus) -> bool:
        values: dict[str, Any] = {"status": status.value, "updated_at": utcnow()}
        if status == SandboxStatus.RUNNING:
            values["started_at"] = utcnow()
        elif status == SandboxStatus.STOPPED:
            values["stopped_at"] = utcnow()
        async with self._scope("update sandbox status") as session:
            result = await session.execute(
                update(SandboxRecord).where(SandboxRecord.id == sandbox_id).values(**values)
            )
        return result.rowcount == 1

    async def get_sandbox_record(self, sandbox_id: str) -> SandboxRecord | None:
        async with self._scope("get sandbox record") as session:
            return await session.get(SandboxRecord, sandbox_id)

    # =========================================================================
    # Feature Runs
    # =========================================================================

    async def create_feature_run(self, run: FeatureRun) -> str:
        return await self._create("create feature run", run)

    async def get_feature_run(self, run_id: str) -> FeatureRun | None:
        async with self._scope("get feature run") as session:
            return await session.get(FeatureRun, run_id)

    async def advance_phase(self, run_id: str, phase: Phase) -> bool:
        """Move a run forward to ``phase``.

        Only the immediate predecessor may advance, so ``current_phase`` never
        regresses or skips, and replaying an advance is a no-op.
        """
        if phase == Phase.FAILED:
            return await self.fail_feature_run(run_id, "failed")
        index = PHASE_ORDER.index(phase)
        if index == 0:
            return False
        previous = PHASE_ORDER[index - 1]
        values: dict[str, Any] = {"current_phase": phase.value}
        if phase == Phase.COMPLETED:
            values["completed_at"] = utcnow()
        async with self._scope("advance phase") as session:
            result = await session.execute(
                update(FeatureRun)
                .where(FeatureRun.id == run_id, FeatureRun.current_phase == previous.value)
                .values(**values)
            )
        return result.rowcount == 1

    async def attach_sandbox(self, run_id: str, sandbox_id: str) -> bool:
        async with self._scope("attach sandbox") as session:
            result = await session.execute(
                update(FeatureRun).where(FeatureRun.id == run_id).values(sandbox_id=sandbox_id)
            )
        return result.rowcount == 1

    async def fail_feature_run(self, run_id: str, error_message: str) -> bool:
        async with self._scope("fail feature run") as session:
            result = await session.execute(
                update(FeatureRun)
                .where(FeatureRun.id == run_id, FeatureRun.current_phase.not_in(_TERMINAL_PHASES))
                .values(
                    current_phase=Phase.FAILED.value,
                    error_message=error_message,
                    completed_at=utcnow(),
                )
            )
        return result.rowcount == 1

    async def append_memories(self, run_id: str, records: Iterable[MemoryRecord]) -> None:
        """Atomically append memory records to a run."""
        payload = [r.model_dump(mode="json") for r in records]
        if not payload:
            return
        async with self._scope("update feature run memories") as session:
            dialect = session.get_bind().dialect.name
            await session.execute(
                update(FeatureRun)
                .where(FeatureRun.id == run_id)
                .values(memories=_memory_append_expression(dialect, payload))
            )

    async def get_memories(self, run_id: str) -> list[MemoryRecord]:
        async with self._scope("get feature run memories") as session:
            result = await session.execute(select(FeatureRun.memories).where(FeatureRun.id == run_id))
            memories = result.scalar_one_or_none() or []
        return [MemoryRecord.model_validate(m) for m in memories]

    # =========================================================================
    # Phase Results
    # =========================================================================

    async def create_phase_result(self, phase_result_id: str, run_id: str, phase: Phase) -> str:
        row = PhaseResult(
            id=phase_result_id,
            run_id=run_id,
            phase=phase.value,
            status=PhaseStatus.RUNNING.value,
        )
        return await self._create("create phase result", row)

    async def pass_phase_result(self, phase_result_id: str, output: dict[str, Any]) -> bool:
        return await self._finish_phase_result(phase_result_id, PhaseStatus.PASSED, output=output)

    async def fail_phase_result(
        self,
        phase_result_id: str,
        error_message: str,
        output: dict[str, Any] | None = None,
    ) -> bool:
        return await self._finish_phase_result(
            phase_result_id, PhaseStatus.FAILED, output=output, error_message=error_message
        )

    async def _finish_phase_result(
        self,
        phase_result_id: str,
        status: PhaseStatus,
        output: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> bool:
        async with self._scope(f"{status.value} phase result") as session:
            result = await session.execute(
                update(PhaseResult)
                .where(
                    PhaseResult.id == phase_result_id,
                    PhaseResult.status == PhaseStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    output=output,
                    error_message=error_message,
                    completed_at=utcnow(),
                )
            )
        return result.rowcount == 1

    async def get_phase_result(self, phase_result_id: str) -> PhaseResult | None:
        async with self._scope("get phase result") as session:
            return await session.get(PhaseResult, phase_result_id)

    async def list_phase_results(self, run_id: str) -> list[PhaseResult]:
        async with self._scope("list phase results") as session:
            result = await session.execute(
                select(PhaseResult)
                .where(PhaseResult.run_id == run_id)
                .order_by(PhaseResult.started_at)
            )
            return list(result.scalars().all())

    # =========================================================================
    # Agent Invocations
    # =========================================================================

    async def create_agent_invocation(self, invocation: AgentInvocation) -> str:
        return await self._create("create agent invocation", invocation)

    async def complete_agent_invocation(
        self,
        invocation_id: str,
        *,
        finish_reason: str,
        output_text: str,
        usage: dict[str, int],
        steps: int,
        tool_calls: int,
    ) -> bool:
        async with self._scope("complete agent invocation") as session:
            result = await session.execute(
                update(AgentInvocation)
                .where(
                    AgentInvocation.id == invocation_id,
                    AgentInvocation.completed_at.is_(None),
                )
                .values(
                    finish_reason=finish_reason,
                    output_text=output_text,
                    prompt_tokens=usage.get("prompt_tokens", 0),
                    completion_tokens=usage.get("completion_tokens", 0),
                    total_tokens=usage.get("total_tokens", 0),
                    steps=steps,
                    tool_calls=tool_calls,
                    completed_at=utcnow(),
                )
            )
        return result.rowcount == 1

    async def load_invocation_tree(self, phase_result_id: str) -> list[InvocationNode]:
        """Rebuild the invocation forest of one phase from its rows."""
        async with self._scope("load invocation tree") as session:
            result = await session.execute(
                select(AgentInvocation)
                .where(AgentInvocation.phase_result_id == phase_result_id)
                .order_by(AgentInvocation.started_at)
            )
            rows = list(result.scalars().all())

        nodes = {
            row.id: InvocationNode(
                id=row.id,
                agent_type=row.agent_type,
                model_id=row.model_id,
                finish_reason=row.finish_reason,
                steps=row.steps,
                tool_calls=row.tool_calls,
                total_tokens=row.total_tokens,
            )
            for row in rows
        }
        roots: list[InvocationNode] = []
        for row in rows:
            parent = nodes.get(row.parent_invocation_id) if row.parent_invocation_id else None
            if parent is None:
                roots.append(nodes[row.id])
            else:
                parent.children.append(nodes[row.id])
        return roots

    # =========================================================================
    # CTA Events
    # =========================================================================

    async def create_cta_event(
        self,
        cta_id: str,
        *,
        run_id: str,
        phase_result_id: str,
        request: ApprovalRequest | TextRequest | ChoiceRequest,
        invocation_id: str | None = None,
        tool_call_id: str | None = None,
    ) -> str:
        row = CtaEvent(
            id=cta_id,
            run_id=run_id,
            phase_result_id=phase_result_id,
            invocation_id=invocation_id,
            tool_call_id=tool_call_id,
            kind=request.kind,
        )
        if isinstance(request, ApprovalRequest):
            row.request_message = request.message
        elif isinstance(request, TextRequest):
            row.request_prompt = request.prompt
            row.request_placeholder = request.placeholder
        elif isinstance(request, ChoiceRequest):
            row.request_prompt = request.prompt
            row.request_options = [o.model_dump() for o in request.options]
        return await self._create("create cta event", row)

    async def complete_cta_event(
        self,
        cta_id: str,
        response: ApprovalResponse | TextResponse | ChoiceResponse,
    ) -> bool:
        values: dict[str, Any] = {"responded_at": utcnow()}
        if isinstance(response, ApprovalResponse):
            values["response_approved"] = response.approved
            values["response_reason"] = response.reason
        elif isinstance(response, TextResponse):
            values["response_text"] = response.text
        elif isinstance(response, ChoiceResponse):
            values["response_selected_id"] = response.selected_id
        return await self._resolve_cta_event("complete cta event", cta_id, values)

    async def timeout_cta_event(self, cta_id: str) -> bool:
        return await self._resolve_cta_event(
            "timeout cta event", cta_id, {"timed_out": True}
        )

    async def _resolve_cta_event(self, operation: str, cta_id: str, values: dict[str, Any]) -> bool:
        async with self._scope(operation) as session:
            result = await session.execute(
                update(CtaEvent)
                .where(
                    CtaEvent.id == cta_id,
                    CtaEvent.responded_at.is_(None),
                    CtaEvent.timed_out.is_(False),
                )
                .values(**values)
            )
        return result.rowcount == 1

    async def get_cta_event(self, cta_id: str) -> CtaEvent | None:
        async with self._scope("get cta event") as session:
            return await session.get(CtaEvent, cta_id)

    async def list_cta_events(self, run_id: str) -> list[CtaEvent]:
        async with self._scope("list cta events") as session:
            result = await session.execute(
                select(CtaEvent).where(CtaEvent.run_id == run_id).order_by(CtaEvent.requested_at)
            )
            return list(result.scalars().all())
