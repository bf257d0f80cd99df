"""Tables backing the durable step substrate.

Tables:
- WorkflowRun: one row per workflow instance, with its input and outcome
- WorkflowStep: memoized step results keyed by (workflow_id, step_key)
- WorkflowWait: pending or resolved event waits and their deadlines
- WorkflowEvent: every event sent into the substrate
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Column, Index, Text
from sqlmodel import Field, SQLModel

from featureforge.database.models import JSONType, UTCDateTime, timestamp_field


class WorkflowRun(SQLModel, table=True):
    """A workflow instance that is replayed from the start on every resume."""

    __tablename__ = "workflow_runs"

    id: str = Field(primary_key=True)
    function_name: str = Field(index=True)
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONType, nullable=False))

    status: str = Field(default="running", index=True)  # running, suspended, completed, failed
    output: Any | None = Field(default=None, sa_column=Column(JSONType))
    error_message: str | None = Field(default=None, sa_column=Column(Text))

    # Earliest deadline among pending waits while suspended
    wake_at: datetime | None = timestamp_field(index=True)

    # Drive lease: the engine currently replaying the workflow and until when
    lease_owner: str | None = Field(default=None)
    leased_until: datetime | None = timestamp_field(index=True)

    created_at: datetime = timestamp_field(nullable=False, default_now=True)
    updated_at: datetime | None = timestamp_field()


class WorkflowStep(SQLModel, table=True):
    """Memoized result of one step."""

    __tablename__ = "workflow_steps"

    workflow_id: str = Field(foreign_key="workflow_runs.id", primary_key=True)
    step_key: str = Field(primary_key=True)
    output: Any | None = Field(default=None, sa_column=Column(JSONType))
    created_at: datetime = timestamp_field(nullable=False, default_now=True)


class WorkflowWait(SQLModel, table=True):
    """An event wait registered by a suspended workflow."""

    __tablename__ = "workflow_waits"
    __table_args__ = (
        Index("ix_workflow_waits_event", "event_name", "correlation_id", "resolved"),
    )

    workflow_id: str = Field(foreign_key="workflow_runs.id", primary_key=True)
    step_key: str = Field(primary_key=True)
    event_name: str
    correlation_id: str
    deadline: datetime = Field(sa_column=Column(UTCDateTime, nullable=False))
    resolved: bool = Field(default=False)
    created_at: datetime = timestamp_field(nullable=False, default_now=True)


class WorkflowEvent(SQLModel, table=True):
    """An event delivered to the substrate."""

    __tablename__ = "workflow_events"
    __table_args__ = (
        Index("ix_workflow_events_name_correlation", "name", "correlation_id"),
    )

    id: str = Field(primary_key=True)
    name: str
    correlation_id: str | None = Field(default=None)
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSONType, nullable=False))
    created_at: datetime = timestamp_field(nullable=False, default_now=True)
