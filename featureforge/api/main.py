"""FastAPI application entry point.

The lifespan creates the tables and, unless disabled, runs the workflow
ticker: a background loop that resumes runs whose CTA deadline passed and
recovers runs orphaned by a crashed process.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from featureforge.api.routes import get_workflow_engine, router
from featureforge.config import get_settings
from featureforge.database.session import close_db, init_db
from featureforge.durable.engine import WorkflowEngine


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


async def run_workflow_ticker(engine: WorkflowEngine, interval_seconds: float) -> None:
    """Tick the engine forever; the first tick recovers runs left by a crash."""
    while True:
        try:
            resumed = await engine.tick()
            if resumed:
                logger.info(f"Workflow ticker resumed {len(resumed)} run(s): {resumed}")
        except Exception as e:
            logger.error(f"Workflow tick failed: {e}")
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version} ({settings.environment})")

    await init_db()
    logger.info("Database initialized")

    ticker: asyncio.Task | None = None
    if settings.workflow_tick_interval_seconds > 0:
        engine = app.dependency_overrides.get(get_workflow_engine, get_workflow_engine)()
        ticker = asyncio.create_task(run_workflow_ticker(engine, settings.workflow_tick_interval_seconds))

    yield

    logger.info("Shutting down...")
    if ticker is not None:
        ticker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await ticker
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="FeatureForge API - durable multi-phase feature pipeline",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "featureforge.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
