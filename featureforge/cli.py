"""CLI entrypoint (Typer).

Commands:
- serve: run the API with uvicorn
- launch: start a feature run in this process and drive it to its first wait
- respond: answer a pending human feedback request
- tick: resume runs whose wait deadline has passed and recover orphaned ones
- init-db: create the tables
"""

from __future__ import annotations

import asyncio
import json
import logging
from uuid import uuid4

import typer

from featureforge.agent.cta import CTA_RESPONDED
from featureforge.config import get_settings
from featureforge.database.session import close_db, get_session_factory, init_db
from featureforge.pipeline.feature_run import build_engine, launch_feature_run
from featureforge.runtime import build_deps
from featureforge.schemas import CTA_RESPONSE_ADAPTER, FeatureRequest


app = typer.Typer(help="FeatureForge: durable multi-phase feature pipeline.")


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if get_settings().debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _engine():
    session_factory = get_session_factory()
    return build_engine(build_deps(session_factory=session_factory), session_factory)


@app.command()
def serve(
    host: str = typer.Option(None, help="Bind address (defaults to API_HOST)"),
    port: int = typer.Option(None, help="Port (defaults to API_PORT)"),
):
    """Serve the HTTP API."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "featureforge.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=settings.debug,
    )


@app.command()
def launch(
    prompt: str,
    repo_url: str = typer.Option(..., "--repo", help="Repository, e.g. https://github.com/org/app"),
    branch: str = typer.Option("main", "--branch", help="Base branch"),
):
    """Launch a feature run and drive it until it finishes or waits for a human."""
    _configure_logging()
    run_id = str(uuid4())

    async def _launch() -> str:
        await init_db()
        try:
            return await launch_feature_run(
                _engine(),
                FeatureRequest(prompt=prompt, repo_url=repo_url, branch=branch),
                run_id,
            )
        finally:
            await close_db()

    status = asyncio.run(_launch())
    typer.echo(f"Run {run_id}: {status}")


@app.command()
def respond(
    cta_id: str,
    response: str = typer.Argument(..., help='Response JSON, e.g. {"kind": "approval", "approved": true}'),
):
    """Answer a pending human feedback request and resume its run."""
    _configure_logging()
    try:
        parsed = CTA_RESPONSE_ADAPTER.validate_json(response)
    except ValueError as e:
        typer.echo(f"Invalid response: {e}", err=True)
        raise typer.Exit(code=1)

    async def _respond() -> list[str]:
        try:
            return await _engine().deliver_event(
                CTA_RESPONDED,
                {"response": parsed.model_dump(mode="json")},
                correlation_id=cta_id,
            )
        finally:
            await close_db()

    resumed = asyncio.run(_respond())
    typer.echo(json.dumps({"cta_id": cta_id, "resumed": resumed}))


@app.command()
def tick():
    """Resume runs whose wait deadline has passed and recover crashed drives."""
    _configure_logging()

    async def _tick() -> list[str]:
        try:
            return await _engine().tick()
        finally:
            await close_db()

    resumed = asyncio.run(_tick())
    typer.echo(json.dumps({"resumed": resumed}))


@app.command("init-db")
def init_db_command():
    """Create all tables."""
    _configure_logging()

    async def _init() -> None:
        await init_db()
        await close_db()

    asyncio.run(_init())
    typer.echo("Database initialized")


if __name__ == "__main__":
    app()
