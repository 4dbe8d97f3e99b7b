"""FastAPI application wiring for the support desk engine.

This module bootstraps the HTTP API:

- Loads ``.env`` and the runtime :class:`~supportdesk.config.Settings`.
- Configures logging, Prometheus metrics and per-IP request throttling.
- Mounts the conversation, presence and rate limit routers.
- Starts the maintenance scheduler (presence cleanup, rate limit sweep and
  daily usage aggregation) for the lifetime of the app.
"""

import logging
import os
from contextlib import asynccontextmanager
from functools import partial

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .config import Settings, load_settings
from .core.services import aggregate_usage, cleanup_presence, cleanup_rate_limits
from .routers import conversations, presence, rate_limits
from .scheduler import MaintenanceScheduler

load_dotenv()

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Extract a best-effort client IP for rate limiting.

    Prefer ``X-Forwarded-For`` (first hop) if present, otherwise use the
    socket peer address. This function is used by SlowAPI to key the limiter.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def build_scheduler(settings: Settings) -> MaintenanceScheduler:
    return MaintenanceScheduler(
        presence_cleanup=partial(cleanup_presence, settings),
        rate_limit_cleanup=partial(cleanup_rate_limits, settings),
        usage_aggregation=partial(aggregate_usage, settings),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if os.getenv("SCHEDULER_ENABLED", "true").lower() == "true":
        scheduler = build_scheduler(app.state.settings)
        scheduler.start()
    app.state.scheduler = scheduler
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown()


async def health():
    """Liveness/readiness probe with a minimal JSON body."""
    return {"status": "ok"}


async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the API. Routers and jobs read ``settings`` from ``app.state``."""

    app = FastAPI(title="Support Desk", version=__version__, lifespan=lifespan)
    init_logging(app)
    app.state.settings = settings or load_settings()
    app.state.limiter = Limiter(
        key_func=get_client_ip,
        default_limits=[os.getenv("API_RATE_LIMIT", "120/minute")],
    )
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    app.include_router(conversations.router)
    app.include_router(presence.router)
    app.include_router(rate_limits.router)
    app.add_api_route("/api/health", health, methods=["GET"])
    app.add_api_route("/api/version", version, methods=["GET"])

    # Expose Prometheus metrics
    Instrumentator().instrument(app).expose(
        app, include_in_schema=False, endpoint="/api/metrics"
    )
    return app


app = create_app()
