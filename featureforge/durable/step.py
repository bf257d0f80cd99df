"""Step context handed to workflow functions.

A workflow function is replayed from the top every time it resumes. Each
operation on the context is keyed; completed keys return the recorded result
without running again:
- run(key, fn): memoized execution with retries of transient failures
- invoke(key, child, payload): durable call of a child workflow function in a
  nested key namespace
- send_event(key, name, data): persist and publish an event once
- wait_for_event(key, name, correlation_id, timeout): event rendezvous that
  suspends the workflow until the event arrives or the deadline passes
- gather(*aws): concurrent branches that all settle before a suspension or
  error propagates
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable
from uuid import uuid4

from pydantic import TypeAdapter
from sqlalchemy import update
from sqlmodel import select

from featureforge.database.repository import insert_or_ignore
from featureforge.database.session import session_scope
from featureforge.durable.models import WorkflowEvent, WorkflowStep, WorkflowWait
from featureforge.errors import is_retriable

if TYPE_CHECKING:
    from featureforge.durable.engine import WorkflowEngine


logger = logging.getLogger(__name__)

_STEP_KEYS = ("workflow_id", "step_key")

_JSON = TypeAdapter(Any)


def to_json(value: Any) -> Any:
    """JSON form of a step result, the same on first run and on replay."""
    return _JSON.dump_python(value, mode="json")


class WorkflowSuspended(BaseException):
    """Raised at a wait whose event has not arrived yet.

    Derives from BaseException so ordinary ``except Exception`` handlers in
    workflow code let it through to the engine.
    """

    def __init__(self, workflow_id: str, step_key: str, wake_at: datetime):
        super().__init__(f"{workflow_id} suspended at {step_key} until {wake_at.isoformat()}")
        self.workflow_id = workflow_id
        self.step_key = step_key
        self.wake_at = wake_at


WorkflowFn = Callable[["StepContext", dict[str, Any]], Awaitable[Any]]


class StepContext:
    """Durable operations for one execution of one workflow."""

    def __init__(
        self,
        engine: WorkflowEngine,
        workflow_id: str,
        prefix: str = "",
        seen: set[str] | None = None,
    ):
        self._engine = engine
        self.workflow_id = workflow_id
        self._prefix = prefix
        self._seen = seen if seen is not None else set()

    def now(self) -> datetime:
        return self._engine.now()

    def _claim(self, key: str) -> str:
        full_key = f"{self._prefix}{key}"
        if full_key in self._seen:
            raise ValueError(f"Step key used twice in one execution: {full_key}")
        self._seen.add(full_key)
        return full_key

    def child(self, key: str) -> StepContext:
        """Context whose keys live under ``key/``."""
        return StepContext(self._engine, self.workflow_id, f"{self._prefix}{key}/", self._seen)

    # =========================================================================
    # Memo storage
    # =========================================================================

    async def _load(self, full_key: str) -> tuple[bool, Any]:
        async with session_scope(self._engine.session_factory) as session:
            row = await session.get(WorkflowStep, (self.workflow_id, full_key))
        if row is None:
            return False, None
        return True, row.output

    async def _save(self, full_key: str, value: Any) -> Any:
        async with session_scope(self._engine.session_factory) as session:
            inserted = await insert_or_ignore(
                session,
                WorkflowStep(workflow_id=self.workflow_id, step_key=full_key, output=value),
                _STEP_KEYS,
            )
        if inserted:
            return value
        # Another execution recorded this step first; its result wins
        _, stored = await self._load(full_key)
        return stored

    # =========================================================================
    # Operations
    # =========================================================================

    async def run(self, key: str, fn: Callable[[], Any], *, max_attempts: int | None = None) -> Any:
        """Run ``fn`` at most once per key and return its JSON-able result.

        The same JSON form is returned on first execution and on replay.
        Pass ``max_attempts=1`` when ``fn`` runs durable operations of its
        own; those retry themselves and their keys can only be claimed once.
        """
        full_key = self._claim(key)
        found, value = await self._load(full_key)
        if found:
            return value

        max_attempts = max_attempts or self._engine.max_step_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                result = fn()
                if inspect.isawaitable(result):
                    result = await result
                break
            except Exception as e:
                if not is_retriable(e) or attempt >= max_attempts:
                    logger.error(
                        f"[{self.workflow_id}] Step {full_key} failed after {attempt} attempt(s): {e}"
                    )
                    raise
                delay = self._engine.step_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"[{self.workflow_id}] Step {full_key} failed on attempt {attempt}, "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)

        return await self._save(full_key, to_json(result))

    async def invoke(self, key: str, child: WorkflowFn, payload: dict[str, Any]) -> Any:
        """Durably call a child workflow function and memoize its result."""
        full_key = self._claim(key)
        found, value = await self._load(full_key)
        if found:
            return value

        ctx = StepContext(self._engine, self.workflow_id, f"{full_key}/", self._seen)
        result = await child(ctx, payload)
        return await self._save(full_key, to_json(result))

    async def send_event(
        self,
        key: str,
        name: str,
        data: dict[str, Any],
        correlation_id: str | None = None,
    ) -> str:
        """Persist and publish an event once; returns the event id."""

        async def _send() -> str:
            event_id = str(uuid4())
            await self._engine.record_event(event_id, name, data, correlation_id)
            await self._engine.publish(name, data)
            return event_id

        return await self.run(key, _send)

    async def wait_for_event(
        self,
        key: str,
        name: str,
        correlation_id: str,
        timeout: timedelta,
    ) -> dict[str, Any] | None:
        """Wait for an event with ``correlation_id``.

        Returns:
            The event data, or None once the deadline recorded by the first
            execution of this wait has passed

        Raises:
            WorkflowSuspended: neither the event nor the deadline has arrived
        """
        full_key = self._claim(key)
        found, value = await self._load(full_key)
        if found:
            return value

        now = self.now()
        async with session_scope(self._engine.session_factory) as session:
            await insert_or_ignore(
                session,
                WorkflowWait(
                    workflow_id=self.workflow_id,
                    step_key=full_key,
                    event_name=name,
                    correlation_id=correlation_id,
                    deadline=now + timeout,
                ),
                _STEP_KEYS,
            )
            wait = await session.get(WorkflowWait, (self.workflow_id, full_key))
            result = await session.execute(
                select(WorkflowEvent)
                .where(WorkflowEvent.name == name, WorkflowEvent.correlation_id == correlation_id)
                .order_by(WorkflowEvent.created_at)
                .limit(1)
            )
            event = result.scalars().first()

        if event is not None:
            outcome: dict[str, Any] | None = event.data
        elif now >= wait.deadline:
            logger.warning(f"[{self.workflow_id}] Wait {full_key} for {name}:{correlation_id} timed out")
            outcome = None
        else:
            raise WorkflowSuspended(self.workflow_id, full_key, wait.deadline)

        async with session_scope(self._engine.session_factory) as session:
            await session.execute(
                update(WorkflowWait)
                .where(WorkflowWait.workflow_id == self.workflow_id, WorkflowWait.step_key == full_key)
                .values(resolved=True)
            )
        return await self._save(full_key, outcome)

    async def gather(self, *aws: Awaitable[Any]) -> list[Any]:
        """Await branches concurrently and let every branch settle.

        Errors are raised before suspensions so a fatal branch is reported
        without waiting for a sibling's event.
        """
        results = await asyncio.gather(*aws, return_exceptions=True)
        suspension: WorkflowSuspended | None = None
        for result in results:
            if isinstance(result, WorkflowSuspended):
                suspension = suspension or result
            elif isinstance(result, BaseException):
                raise result
        if suspension is not None:
            raise suspension
        return list(results)
