"""Workflow engine: starts, resumes, wakes and recovers durable workflows.

The engine holds no per-run state between drives. Every drive replays the
registered workflow function from the start against the memoized steps in
the database, so a process restart loses nothing.

Drive leases:
- a drive holds a lease on its WorkflowRun row (``lease_owner`` and
  ``leased_until``) and refreshes it from a heartbeat task
- a drive that cannot take the lease leaves the run to its current holder
- ``recover`` re-drives ``running`` workflows whose lease expired, which only
  happens when the process driving them died
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy import exists, func, or_, update
from sqlmodel import select

from featureforge.database.models import utcnow
from featureforge.database.repository import insert_or_ignore
from featureforge.database.session import SessionFactory, session_scope
from featureforge.durable.models import WorkflowEvent, WorkflowRun, WorkflowWait
from featureforge.durable.step import StepContext, WorkflowFn, WorkflowSuspended, to_json


logger = logging.getLogger(__name__)

EventSubscriber = Callable[[str, dict[str, Any]], Awaitable[None]]

_TERMINAL = ("completed", "failed")


class WorkflowEngine:
    """Registry and driver for durable workflow functions."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        clock: Callable[[], datetime] | None = None,
        max_step_attempts: int = 3,
        step_backoff_seconds: float = 1.0,
        lease_seconds: float = 300.0,
    ):
        self.session_factory = session_factory
        self.max_step_attempts = max_step_attempts
        self.step_backoff_seconds = step_backoff_seconds
        self.lease = timedelta(seconds=lease_seconds)
        self.owner_id = uuid4().hex
        self._clock = clock or utcnow
        self._workflows: dict[str, WorkflowFn] = {}
        self._subscribers: list[EventSubscriber] = []
        self._locks: dict[str, asyncio.Lock] = {}

    def now(self) -> datetime:
        return self._clock()

    def register(self, name: str, fn: WorkflowFn) -> None:
        self._workflows[name] = fn

    def subscribe(self, subscriber: EventSubscriber) -> None:
        """Receive every event sent from inside a workflow."""
        self._subscribers.append(subscriber)

    async def publish(self, name: str, data: dict[str, Any]) -> None:
        for subscriber in self._subscribers:
            await subscriber(name, data)

    async def record_event(
        self,
        event_id: str,
        name: str,
        data: dict[str, Any],
        correlation_id: str | None,
    ) -> bool:
        async with session_scope(self.session_factory) as session:
            return await insert_or_ignore(
                session,
                WorkflowEvent(id=event_id, name=name, correlation_id=correlation_id, data=data),
            )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(
        self,
        name: str,
        payload: dict[str, Any],
        workflow_id: str | None = None,
    ) -> WorkflowRun:
        """Start a workflow, or re-drive it if ``workflow_id`` already exists."""
        if name not in self._workflows:
            raise KeyError(f"Unknown workflow: {name}")
        workflow_id = workflow_id or str(uuid4())
        async with session_scope(self.session_factory) as session:
            await insert_or_ignore(
                session,
                WorkflowRun(
                    id=workflow_id,
                    function_name=name,
                    payload=payload,
                    lease_owner=self.owner_id,
                    leased_until=self.now() + self.lease,
                ),
            )
        logger.info(f"[{workflow_id}] Started workflow {name}")
        return await self.resume(workflow_id)

    async def get_run(self, workflow_id: str) -> WorkflowRun | None:
        async with session_scope(self.session_factory) as session:
            return await session.get(WorkflowRun, workflow_id)

    async def resume(self, workflow_id: str) -> WorkflowRun:
        """Replay a workflow until it completes, fails or suspends again."""
        lock = self._locks.setdefault(workflow_id, asyncio.Lock())
        async with lock:
            return await self._drive(workflow_id)

    async def deliver_event(
        self,
        name: str,
        data: dict[str, Any],
        correlation_id: str | None = None,
        event_id: str | None = None,
    ) -> list[str]:
        """Persist an external event and resume every workflow waiting on it.

        Returns:
            Ids of the workflows that were resumed
        """
        await self.record_event(event_id or str(uuid4()), name, data, correlation_id)
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(WorkflowWait.workflow_id)
                .where(
                    WorkflowWait.event_name == name,
                    WorkflowWait.correlation_id == correlation_id,
                    WorkflowWait.resolved.is_(False),
                )
                .distinct()
            )
            waiting = list(result.scalars().all())

        for workflow_id in waiting:
            logger.info(f"[{workflow_id}] Event {name}:{correlation_id} arrived, resuming")
            await self.resume(workflow_id)
        return waiting

    async def tick(self) -> list[str]:
        """Resume due and orphaned workflows.

        Due workflows are suspended ones whose earliest wait deadline has
        passed. Orphaned workflows are running ones whose drive lease expired.

        Returns:
            Ids of the workflows that were resumed
        """
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(WorkflowRun.id).where(
                    WorkflowRun.status == "suspended",
                    WorkflowRun.wake_at <= self.now(),
                )
            )
            due = list(result.scalars().all())

        for workflow_id in due:
            logger.info(f"[{workflow_id}] Wait deadline passed, resuming")
            await self.resume(workflow_id)
        return due + await self.recover()

    async def recover(self) -> list[str]:
        """Re-drive running workflows whose drive lease expired."""
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(WorkflowRun.id).where(
                    WorkflowRun.status == "running",
                    or_(WorkflowRun.leased_until.is_(None), WorkflowRun.leased_until <= self.now()),
                )
            )
            orphaned = list(result.scalars().all())

        recovered: list[str] = []
        for workflow_id in orphaned:
            lock = self._locks.get(workflow_id)
            if lock is not None and lock.locked():
                continue
            logger.warning(f"[{workflow_id}] Drive lease expired while running, recovering")
            await self.resume(workflow_id)
            recovered.append(workflow_id)
        return recovered

    # =========================================================================
    # Driving
    # =========================================================================

    async def _drive(self, workflow_id: str) -> WorkflowRun:
        while True:
            run = await self.get_run(workflow_id)
            if run is None:
                raise KeyError(f"Unknown workflow run: {workflow_id}")
            if run.status in _TERMINAL:
                return run
            if not await self._acquire_lease(workflow_id):
                logger.info(f"[{workflow_id}] Held by another driver, not resuming")
                return run

            heartbeat = asyncio.create_task(self._heartbeat(workflow_id))
            try:
                suspended = await self._execute(run)
            finally:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat

            # An event that arrived during the drive found no suspended run
            # to wake; replay again so it is not left until the deadline
            if not (suspended and await self._has_arrived_event(workflow_id)):
                return await self.get_run(workflow_id)
            logger.info(f"[{workflow_id}] Event arrived while driving, replaying")

    async def _execute(self, run: WorkflowRun) -> bool:
        """Replay once and record the outcome; returns True when suspended."""
        workflow_id = run.id
        fn = self._workflows[run.function_name]
        ctx = StepContext(self, workflow_id)
        try:
            output = await fn(ctx, run.payload)
        except WorkflowSuspended as suspended:
            wake_at = await self._earliest_deadline(workflow_id)
            logger.info(f"[{workflow_id}] Suspended at {suspended.step_key} until {wake_at}")
            await self._release(workflow_id, status="suspended", wake_at=wake_at)
            return True
        except Exception as e:
            logger.exception(f"[{workflow_id}] Workflow {run.function_name} failed: {e}")
            await self._release(workflow_id, status="failed", error_message=str(e), wake_at=None)
        else:
            logger.info(f"[{workflow_id}] Workflow {run.function_name} completed")
            await self._release(workflow_id, status="completed", output=to_json(output), wake_at=None)
        return False

    async def _acquire_lease(self, workflow_id: str) -> bool:
        now = self.now()
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == workflow_id,
                    WorkflowRun.status.not_in(_TERMINAL),
                    or_(
                        WorkflowRun.leased_until.is_(None),
                        WorkflowRun.leased_until <= now,
                        WorkflowRun.lease_owner == self.owner_id,
                    ),
                )
                .values(
                    status="running",
                    lease_owner=self.owner_id,
                    leased_until=now + self.lease,
                    updated_at=utcnow(),
                )
            )
            return result.rowcount == 1

    async def _heartbeat(self, workflow_id: str) -> None:
        interval = self.lease.total_seconds() / 3
        while True:
            await asyncio.sleep(interval)
            try:
                async with session_scope(self.session_factory) as session:
                    await session.execute(
                        update(WorkflowRun)
                        .where(WorkflowRun.id == workflow_id, WorkflowRun.lease_owner == self.owner_id)
                        .values(leased_until=self.now() + self.lease)
                    )
            except Exception as e:
                logger.warning(f"[{workflow_id}] Lease heartbeat failed: {e}")

    async def _has_arrived_event(self, workflow_id: str) -> bool:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(
                    exists().where(
                        WorkflowWait.workflow_id == workflow_id,
                        WorkflowWait.resolved.is_(False),
                        WorkflowEvent.name == WorkflowWait.event_name,
                        WorkflowEvent.correlation_id == WorkflowWait.correlation_id,
                    )
                )
            )
            return bool(result.scalar())

    async def _earliest_deadline(self, workflow_id: str) -> datetime | None:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(func.min(WorkflowWait.deadline)).where(
                    WorkflowWait.workflow_id == workflow_id,
                    WorkflowWait.resolved.is_(False),
                )
            )
            return result.scalar_one_or_none()

    async def _release(self, workflow_id: str, **values: Any) -> None:
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(WorkflowRun)
                .where(WorkflowRun.id == workflow_id)
                .values(updated_at=utcnow(), lease_owner=None, leased_until=None, **values)
            )
