"""HTTP surface: launching runs and answering CTAs."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import timedelta

import httpx
import pytest

from fakes import FakeModelSource, pipeline_model
from featureforge.api.main import app, run_workflow_ticker
from featureforge.api.routes import get_deps, get_workflow_engine
from featureforge.pipeline.feature_run import build_engine


@pytest.fixture
async def client(make_deps, session_factory, clock):
    deps = make_deps(FakeModelSource(default=pipeline_model()))
    engine = build_engine(deps, session_factory, clock)
    app.dependency_overrides[get_deps] = lambda: deps
    app.dependency_overrides[get_workflow_engine] = lambda: engine

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def launch(client) -> str:
    response = await client.post("/api/runs", json={
        "prompt": "Add dark mode toggle",
        "repo_url": "https://github.com/org/app",
    })
    assert response.status_code == 202
    assert response.json()["status"] == "launched"
    return response.json()["run_id"]


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_launched_run_waits_at_analysis_checkpoint(client):
    run_id = await launch(client)

    run = (await client.get(f"/api/runs/{run_id}")).json()
    assert run["current_phase"] == "approaches"
    assert run["sandbox_id"] == "sbx-test"
    [phase] = run["phases"]
    assert phase["phase"] == "analysis"
    assert phase["status"] == "passed"

    [cta] = (await client.get(f"/api/runs/{run_id}/ctas")).json()
    assert cta["kind"] == "approval"
    assert cta["response"] is None
    assert cta["timed_out"] is False

    invocations = (await client.get(f"/api/runs/{run_id}/invocations")).json()
    [roots] = invocations.values()
    assert [node["agent_type"] for node in roots] == ["orchestrator"]


@pytest.mark.asyncio
async def test_respond_resumes_run(client):
    run_id = await launch(client)
    [cta] = (await client.get(f"/api/runs/{run_id}/ctas")).json()

    response = await client.post(f"/api/ctas/{cta['id']}/respond", json={
        "response": {"kind": "approval", "approved": True},
    })
    assert response.status_code == 202

    ctas = (await client.get(f"/api/runs/{run_id}/ctas")).json()
    assert ctas[0]["response"] == {"kind": "approval", "approved": True, "reason": None}
    assert ctas[1]["kind"] == "choice"
    assert [o["id"] for o in ctas[1]["request"]["options"]] == ["css-vars", "context"]

    again = await client.post(f"/api/ctas/{cta['id']}/respond", json={
        "response": {"kind": "approval", "approved": True},
    })
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_respond_rejects_mismatched_answers(client):
    run_id = await launch(client)
    [cta] = (await client.get(f"/api/runs/{run_id}/ctas")).json()

    wrong_kind = await client.post(f"/api/ctas/{cta['id']}/respond", json={
        "response": {"kind": "choice", "selected_id": "context"},
    })
    malformed = await client.post(f"/api/ctas/{cta['id']}/respond", json={"response": {"kind": "approval"}})

    assert wrong_kind.status_code == 422
    assert malformed.status_code == 422
    # The run is still waiting
    assert (await client.get(f"/api/runs/{run_id}")).json()["current_phase"] == "approaches"


@pytest.mark.asyncio
async def test_unknown_ids_are_not_found(client):
    assert (await client.get("/api/runs/missing")).status_code == 404
    assert (await client.get("/api/runs/missing/ctas")).status_code == 404
    response = await client.post("/api/ctas/missing/respond", json={"response": {"kind": "text", "text": "hi"}})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_workflow_ticker_resumes_due_runs(engine, clock, run_workflow):
    async def workflow(step, payload):
        return await step.wait_for_event("wait", "cta.responded", "cta-1", timedelta(minutes=5))

    assert (await run_workflow(workflow)).status == "suspended"
    clock.advance(timedelta(minutes=10))

    ticker = asyncio.create_task(run_workflow_ticker(engine, 3600))
    try:
        for _ in range(200):
            if (await engine.get_run("wf-test")).status == "completed":
                break
            await asyncio.sleep(0.01)
    finally:
        ticker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await ticker

    run = await engine.get_run("wf-test")
    assert run.status == "completed"
    assert run.output is None
