"""FastAPI routes for the FeatureForge API.

Endpoints:
- POST /runs                       - Launch a feature run
- GET  /runs/{id}                  - Run status, phases and memories
- GET  /runs/{id}/invocations      - Invocation forest per phase
- GET  /runs/{id}/ctas             - Human feedback exchanges of a run
- POST /ctas/{cta_id}/respond      - Answer a pending human feedback request
- POST /workflows/tick             - Wake due workflows, recover orphaned ones
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, ValidationError

from featureforge.agent.cta import CTA_RESPONDED
from featureforge.config import get_settings
from featureforge.database.models import CtaEvent
from featureforge.database.repository import PipelineStore
from featureforge.database.session import get_session_factory
from featureforge.durable.engine import WorkflowEngine
from featureforge.pipeline.feature_run import build_engine, launch_feature_run
from featureforge.runtime import PipelineDeps, build_deps
from featureforge.schemas import (
    CTA_RESPONSE_ADAPTER,
    CtaEventResponse,
    FeatureRequest,
    InvocationNode,
    PhaseResultResponse,
    RunCreateResponse,
    RunResponse,
)


logger = logging.getLogger(__name__)
router = APIRouter()

settings = get_settings()


# =============================================================================
# Dependencies
# =============================================================================

@lru_cache
def get_deps() -> PipelineDeps:
    return build_deps(session_factory=get_session_factory())


@lru_cache
def get_workflow_engine() -> WorkflowEngine:
    return build_engine(get_deps(), get_session_factory())


def get_store(deps: PipelineDeps = Depends(get_deps)) -> PipelineStore:
    return deps.store


class CtaRespondRequest(BaseModel):
    """Body of a CTA answer; ``response`` is validated against the request kind."""
    response: dict[str, Any]


def cta_to_response(event: CtaEvent) -> CtaEventResponse:
    """Flatten the kind-specific columns back into request/response dicts."""
    if event.kind == "approval":
        request: dict[str, Any] = {"kind": "approval", "message": event.request_message}
    elif event.kind == "choice":
        request = {"kind": "choice", "prompt": event.request_prompt, "options": event.request_options or []}
    else:
        request = {"kind": "text", "prompt": event.request_prompt, "placeholder": event.request_placeholder}

    response: dict[str, Any] | None = None
    if event.responded_at is not None:
        if event.kind == "approval":
            response = {"kind": "approval", "approved": event.response_approved, "reason": event.response_reason}
        elif event.kind == "choice":
            response = {"kind": "choice", "selected_id": event.response_selected_id}
        else:
            response = {"kind": "text", "text": event.response_text}

    return CtaEventResponse(
        id=event.id,
        run_id=event.run_id,
        phase_result_id=event.phase_result_id,
        kind=event.kind,
        request=request,
        response=response,
        requested_at=event.requested_at,
        responded_at=event.responded_at,
        timed_out=event.timed_out,
    )


# =============================================================================
# Health Check
# =============================================================================

@router.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
    }


# =============================================================================
# Runs Endpoints
# =============================================================================

@router.post("/runs", response_model=RunCreateResponse, status_code=202)
async def create_run(
    request: FeatureRequest,
    background_tasks: BackgroundTasks,
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> RunCreateResponse:
    """Launch a feature run.

    The run executes in the background until it completes, fails or waits
    for a human. Use GET /runs/{run_id} to poll for status updates.
    """
    run_id = str(uuid4())
    background_tasks.add_task(execute_run_task, engine, request, run_id)
    logger.info(f"[{run_id}] Run queued for {request.repo_url}")
    return RunCreateResponse(run_id=run_id)


async def execute_run_task(engine: WorkflowEngine, request: FeatureRequest, run_id: str) -> None:
    """Background task driving a run to its first suspension or end."""
    try:
        await launch_feature_run(engine, request, run_id)
    except Exception as e:
        logger.error(f"[{run_id}] Error executing run: {e}")


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, store: PipelineStore = Depends(get_store)) -> RunResponse:
    """Get run status by ID."""
    run = await store.get_feature_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")

    phases = await store.list_phase_results(run_id)
    return RunResponse(
        run_id=run.id,
        prompt=run.prompt,
        repo_url=run.repo_url,
        current_phase=run.current_phase,
        sandbox_id=run.sandbox_id,
        memories=run.memories,
        phases=[
            PhaseResultResponse(
                id=p.id,
                phase=p.phase,
                status=p.status,
                output=p.output,
                started_at=p.started_at,
                completed_at=p.completed_at,
            )
            for p in phases
        ],
        created_at=run.created_at,
        completed_at=run.completed_at,
    )


@router.get("/runs/{run_id}/invocations")
async def get_run_invocations(
    run_id: str,
    store: PipelineStore = Depends(get_store),
) -> dict[str, list[InvocationNode]]:
    """Invocation forests keyed by phase result id."""
    if not await store.get_feature_run(run_id):
        raise HTTPException(status_code=404, detail="Run not found")
    return {
        phase.id: await store.load_invocation_tree(phase.id)
        for phase in await store.list_phase_results(run_id)
    }


@router.get("/runs/{run_id}/ctas", response_model=list[CtaEventResponse])
async def get_run_ctas(run_id: str, store: PipelineStore = Depends(get_store)) -> list[CtaEventResponse]:
    """Human feedback exchanges of a run, oldest first."""
    if not await store.get_feature_run(run_id):
        raise HTTPException(status_code=404, detail="Run not found")
    return [cta_to_response(event) for event in await store.list_cta_events(run_id)]


# =============================================================================
# Human Feedback
# =============================================================================

@router.post("/ctas/{cta_id}/respond", status_code=202)
async def respond_to_cta(
    cta_id: str,
    body: CtaRespondRequest,
    background_tasks: BackgroundTasks,
    store: PipelineStore = Depends(get_store),
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> dict:
    """Answer a pending CTA and resume the waiting run in the background."""
    event = await store.get_cta_event(cta_id)
    if not event:
        raise HTTPException(status_code=404, detail="CTA not found")
    if event.responded_at is not None or event.timed_out:
        raise HTTPException(status_code=409, detail="CTA is already resolved")

    try:
        response = CTA_RESPONSE_ADAPTER.validate_python(body.response)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False)) from e
    if response.kind != event.kind:
        raise HTTPException(status_code=422, detail=f"Expected a {event.kind} response, got {response.kind}")
    if event.kind == "choice":
        offered = {option["id"] for option in event.request_options or []}
        if response.selected_id not in offered:
            raise HTTPException(status_code=422, detail=f"Option {response.selected_id!r} was not offered")

    background_tasks.add_task(
        deliver_response_task,
        engine,
        cta_id,
        {"response": response.model_dump(mode="json")},
    )
    logger.info(f"[{event.run_id}] Response to {cta_id} accepted")
    return {"status": "accepted", "cta_id": cta_id}


async def deliver_response_task(engine: WorkflowEngine, cta_id: str, data: dict[str, Any]) -> None:
    try:
        await engine.deliver_event(CTA_RESPONDED, data, correlation_id=cta_id)
    except Exception as e:
        logger.error(f"Error delivering response to {cta_id}: {e}")


# =============================================================================
# Workflow Maintenance
# =============================================================================

@router.post("/workflows/tick")
async def tick_workflows(engine: WorkflowEngine = Depends(get_workflow_engine)) -> dict:
    """Resume due workflows and recover orphaned ones (run from a scheduler)."""
    resumed = await engine.tick()
    return {"resumed": resumed}
