"""SQLModel database tables with full traceability.

Tables:
- SandboxRecord: one sandbox per feature run, with its resource spec
- FeatureRun: the run, its current phase and its append-only memory list
- PhaseResult: one row per phase attempt, with the phase output
- AgentInvocation: every agent loop, forming a forest through parent ids
- CtaEvent: every human feedback exchange, answered or timed out

All primary keys are supplied by the caller so that replayed steps never
create duplicate rows.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Column, DateTime, Index, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


# JSONB on PostgreSQL (enables the || append), plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timestamp column that always hands back aware UTC datetimes.

    PostgreSQL keeps the offset in ``timestamptz``. SQLite has no timezone
    support, so values are stored as UTC wall time and tagged on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def timestamp_field(*, nullable: bool = True, index: bool = False, default_now: bool = False) -> Any:
    """Field for a UTCDateTime column."""
    column = Column(UTCDateTime, nullable=nullable, index=index)
    if default_now:
        return Field(default_factory=utcnow, sa_column=column)
    return Field(default=None, sa_column=column)


# =============================================================================
# Sandbox Model
# =============================================================================

class SandboxRecord(SQLModel, table=True):
    """Sandbox provisioned for a feature run."""

    __tablename__ = "sandboxes"

    id: str = Field(primary_key=True)
    status: str = Field(default="pending", index=True)  # Use SandboxStatus enum values
    repo_url: str = Field(description="Repository the sandbox was cloned from")
    branch: str = Field(default="main")

    # Resource spec
    memory_mb: int = Field(default=512)
    vcpus: int = Field(default=2)
    region: str = Field(default="us-east-1")
    cwd: str = Field(default="/home/user")
    timeout_seconds: int = Field(default=300)

    # Timestamps
    created_at: datetime = timestamp_field(nullable=False, default_now=True)
    started_at: datetime | None = timestamp_field()
    stopped_at: datetime | None = timestamp_field()
    updated_at: datetime | None = timestamp_field()


# =============================================================================
# FeatureRun Model
# =============================================================================

class FeatureRun(SQLModel, table=True):
    """A feature run moving through the fixed phase order."""

    __tablename__ = "feature_runs"
    __table_args__ = (
        Index("ix_feature_runs_phase_created", "current_phase", "created_at"),
    )

    id: str = Field(primary_key=True)
    prompt: str = Field(sa_column=Column(Text, nullable=False), description="Feature request")
    sandbox_id: str | None = Field(default=None, foreign_key="sandboxes.id", index=True)
    repo_url: str = Field(description="Repository locator")
    branch: str = Field(default="main")

    current_phase: str = Field(default="analysis", index=True)  # Use Phase enum values
    memories: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSONType, nullable=False),
    )
    error_message: str | None = Field(default=None, sa_column=Column(Text))

    created_at: datetime = timestamp_field(nullable=False, default_now=True)
    completed_at: datetime | None = timestamp_field()


# =============================================================================
# PhaseResult Model
# =============================================================================

class PhaseResult(SQLModel, table=True):
    """One execution of one phase of a run."""

    __tablename__ = "phase_results"
    __table_args__ = (
        Index("ix_phase_results_run_phase", "run_id", "phase"),
        # At most one running row per (run, phase)
        Index(
            "uq_phase_results_running",
            "run_id",
            "phase",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
    )

    id: str = Field(primary_key=True)
    run_id: str = Field(foreign_key="feature_runs.id", index=True)
    phase: str = Field(index=True)  # analysis, approaches, judging, implementation, pr
    status: str = Field(default="running")  # Use PhaseStatus enum values

    output: dict[str, Any] | None = Field(default=None, sa_column=Column(JSONType))
    error_message: str | None = Field(default=None, sa_column=Column(Text))

    started_at: datetime = timestamp_field(nullable=False, default_now=True)
    completed_at: datetime | None = timestamp_field()


# =============================================================================
# AgentInvocation Model
# =============================================================================

class AgentInvocation(SQLModel, table=True):
    """One bounded agent loop against one model and tool set."""

    __tablename__ = "agent_invocations"
    __table_args__ = (
        Index("ix_agent_invocations_phase_parent", "phase_result_id", "parent_invocation_id"),
    )

    id: str = Field(primary_key=True)
    phase_result_id: str = Field(foreign_key="phase_results.id", index=True)
    parent_invocation_id: str | None = Field(default=None, foreign_key="agent_invocations.id")

    agent_type: str = Field(index=True)  # Use AgentType enum values
    model_id: str = Field(description="Model route used for the loop")
    system_prompt: str = Field(sa_column=Column(Text, nullable=False))
    input_messages: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSONType, nullable=False),
    )

    # Result
    finish_reason: str | None = Field(default=None)
    output_text: str | None = Field(default=None, sa_column=Column(Text))

    # Metrics
    prompt_tokens: int = Field(default=0)
    completion_tokens: int = Field(default=0)
    total_tokens: int = Field(default=0)
    steps: int = Field(default=0)
    tool_calls: int = Field(default=0)

    started_at: datetime = timestamp_field(nullable=False, default_now=True)
    completed_at: datetime | None = timestamp_field()


# =============================================================================
# CtaEvent Model
# =============================================================================

class CtaEvent(SQLModel, table=True):
    """Audit trail of one human feedback exchange."""

    __tablename__ = "cta_events"
    __table_args__ = (
        Index("ix_cta_events_run_requested", "run_id", "requested_at"),
    )

    id: str = Field(primary_key=True)
    run_id: str = Field(foreign_key="feature_runs.id", index=True)
    phase_result_id: str = Field(foreign_key="phase_results.id", index=True)
    invocation_id: str | None = Field(default=None, foreign_key="agent_invocations.id")
    tool_call_id: str | None = Field(default=None)

    kind: str = Field(description="approval, text or choice")

    # Request (kind specific)
    request_message: str | None = Field(default=None, sa_column=Column(Text))
    request_prompt: str | None = Field(default=None, sa_column=Column(Text))
    request_placeholder: str | None = Field(default=None)
    request_options: list[dict[str, Any]] | None = Field(default=None, sa_column=Column(JSONType))

    # Response (kind specific)
    response_approved: bool | None = Field(default=None)
    response_reason: str | None = Field(default=None, sa_column=Column(Text))
    response_text: str | None = Field(default=None, sa_column=Column(Text))
    response_selected_id: str | None = Field(default=None)

    requested_at: datetime = timestamp_field(nullable=False, default_now=True)
    responded_at: datetime | None = timestamp_field()
    timed_out: bool = Field(default=False)
