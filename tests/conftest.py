"""Fixtures: a temporary SQLite database per test and fake collaborators."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Callable

import pytest

from fakes import (
    GATE_COMMANDS,
    FakeModelSource,
    FakeSandbox,
    FakeSandboxProvider,
    FakeSourceHost,
    FixedClock,
    RecordingNotifier,
)
from featureforge.config import Settings
from featureforge.database.models import FeatureRun
from featureforge.database.repository import PipelineStore
from featureforge.database.session import create_engine, create_session_factory, init_db
from featureforge.durable.engine import WorkflowEngine
from featureforge.durable.step import WorkflowFn
from featureforge.durable.models import WorkflowRun
from featureforge.runtime import PipelineDeps
from featureforge.schemas import Phase


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        gate_commands=GATE_COMMANDS,
        max_coder_attempts=5,
        cta_timeout=timedelta(hours=1),
        step_max_attempts=3,
        step_retry_backoff_seconds=0.0,
        orchestrator_max_steps=10,
        explorer_max_steps=5,
        judge_max_steps=5,
        coder_max_steps=10,
        github_token="test-token",
        notification_webhook_url="",
    )


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'featureforge.db'}")
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> PipelineStore:
    return PipelineStore(session_factory)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def engine(session_factory, clock, settings) -> WorkflowEngine:
    return WorkflowEngine(
        session_factory,
        clock=clock,
        max_step_attempts=settings.step_max_attempts,
        step_backoff_seconds=0.0,
    )


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def sandboxes(sandbox) -> FakeSandboxProvider:
    return FakeSandboxProvider(sandbox)


@pytest.fixture
def source_host() -> FakeSourceHost:
    return FakeSourceHost()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_deps(store, sandboxes, source_host, notifier, settings) -> Callable[..., PipelineDeps]:
    def _make(models: FakeModelSource | None = None) -> PipelineDeps:
        return PipelineDeps(
            store=store,
            models=models or FakeModelSource(),
            sandboxes=sandboxes,
            source_host=source_host,
            notifier=notifier,
            settings=settings,
        )

    return _make


@pytest.fixture
def run_workflow(engine) -> Callable[..., Any]:
    """Register ``fn`` under a throwaway name and start it."""

    async def _run(fn: WorkflowFn, payload: dict[str, Any] | None = None, workflow_id: str = "wf-test") -> WorkflowRun:
        engine.register("under-test", fn)
        return await engine.start("under-test", payload or {}, workflow_id=workflow_id)

    return _run


@pytest.fixture
async def feature_run(store) -> str:
    """A FeatureRun with one running analysis PhaseResult."""
    await store.create_feature_run(FeatureRun(id="run-1", prompt="Add dark mode toggle", repo_url="org/app"))
    await store.create_phase_result("phase-1", "run-1", Phase.ANALYSIS)
    return "run-1"
