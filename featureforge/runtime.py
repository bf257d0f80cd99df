"""Collaborators shared by every phase of a feature run.

Workflow functions are replayed from the top on every resume, so they hold
no state of their own. Everything they touch outside the step context lives
here: the store, models, sandboxes, the source host and the notifier.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from featureforge.config import Settings, get_settings
from featureforge.database.repository import PipelineStore
from featureforge.database.session import SessionFactory, get_session_factory
from featureforge.llm.base import ModelSource
from featureforge.pipeline.notifications import Notifier, create_notifier
from featureforge.pipeline.pr import GitHubClient, SourceHost
from featureforge.tools.sandbox import LocalSandboxProvider, SandboxProvider


@dataclass
class PipelineDeps:
    store: PipelineStore
    models: ModelSource
    sandboxes: SandboxProvider
    source_host: SourceHost
    notifier: Notifier
    settings: Settings = field(default_factory=get_settings)


def build_deps(
    settings: Settings | None = None,
    session_factory: SessionFactory | None = None,
) -> PipelineDeps:
    """Production wiring from settings."""
    from featureforge.llm.router import ModelRouter

    settings = settings or get_settings()
    return PipelineDeps(
        store=PipelineStore(session_factory or get_session_factory()),
        models=ModelRouter(settings),
        sandboxes=LocalSandboxProvider(
            root_dir=settings.sandbox_root,
            token=settings.github_token,
            timeout=settings.sandbox_timeout_seconds,
        ),
        source_host=GitHubClient(settings.github_token, settings.github_api_url),
        notifier=create_notifier(settings.notification_webhook_url),
        settings=settings,
    )
