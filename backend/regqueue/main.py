"""
Registration Queue - host process

Runs the reconciliation sweeper on a fixed interval and exposes health and
Prometheus metrics. Queue decisions themselves are a library contract
(regqueue.services.*) called in-process by the registration flow.
"""

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from regqueue.core.config import get_settings
from regqueue.core.logging import setup_logging, get_logger
from regqueue.core.metrics import metrics_endpoint
from regqueue.api.middleware import RequestLoggingMiddleware
from regqueue.db.session import get_db, dispose_engine
from regqueue.services.cache_service import get_redis, close_redis, get_cache_stats
from regqueue.services.strategy_factory import get_capacity_guard
from regqueue.services.sweeper_service import run_sweeper

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()
    logger = get_logger(__name__)

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        admission_strategy=get_capacity_guard().name,
    )

    redis_client = await get_redis()
    if redis_client:
        logger.info("redis_ready")
    else:
        logger.warning("redis_unavailable", message="Running without settings cache")

    sweeper_task = None
    if settings.SWEEPER_ENABLED:
        sweeper_task = asyncio.create_task(run_sweeper(settings.SWEEP_INTERVAL_SECONDS))
    app.state.sweeper_task = sweeper_task

    yield

    if sweeper_task is not None:
        sweeper_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper_task
    await close_redis()
    await dispose_engine()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Admission control for high-demand registration flows",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)


def _sweeper_state() -> str:
    task = getattr(app.state, "sweeper_task", None)
    if task is None:
        return "disabled"
    return "stopped" if task.done() else "running"


@app.get("/health", tags=["Health"])
async def health_check(db: AsyncSession = Depends(get_db)):
    """Health check endpoint for Docker and load balancers."""
    await db.execute(text("SELECT 1"))
    cache_stats = await get_cache_stats()
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "database": "connected",
        "sweeper": _sweeper_state(),
        "cache": cache_stats,
    }


@app.get("/metrics", tags=["Health"])
def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
