from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from enrollsync.api.health import router as health_router
from enrollsync.api.metrics_endpoint import router as metrics_router
from enrollsync.core.config import SETTINGS
from enrollsync.core.logging import setup_logging
from enrollsync.db.engine import async_session_factory, engine, lifespan_db
from enrollsync.db.redis import lifespan_redis, redis_pool
from enrollsync.wiring import build_services

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Nesting ensures teardown in reverse order (LIFO) even if one fails.
    async with lifespan_db():
        async with lifespan_redis():
            services = build_services(
                SETTINGS,
                engine=engine,
                session_factory=async_session_factory,
                redis=redis_pool,
            )
            app.state.services = services
            app.state.orchestrator = services.orchestrator
            try:
                yield
            finally:
                if services.relay is not None:
                    services.relay.detach()


# The business HTTP surface lives in the platform's API; this app only
# hosts the engine and its ops endpoints.

app = FastAPI(
    title="enrollsync",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

app.include_router(metrics_router)
app.include_router(health_router)

logger.info(
    "enrollsync started  env=%s log_level=%s port=%d docs=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "on" if SETTINGS.is_dev else "off",
)
