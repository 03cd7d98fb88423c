"""FastAPI application entry point for the fleet dispatch matching API."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from fleet_dispatch.app.config import get_settings
from fleet_dispatch.app.dependencies import build_services
from fleet_dispatch.infra.database import init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services, create tables, warm the cache and start maintenance loops."""
    settings = get_settings()
    services = build_services(settings)
    app.state.services = services

    await init_db(services.db_engine)

    # Warm-up is best effort: a cold cache only costs latency
    if settings.preload_on_startup:
        try:
            await services.feeds.preload()
        except Exception as e:
            logger.warning("Cache preload failed: %s", e)

    tasks = [
        asyncio.create_task(
            services.store.run_maintenance(
                settings.cache_sweep_interval_seconds,
                settings.cache_stats_interval_seconds,
            )
        ),
        asyncio.create_task(
            services.feeds.run_monitor(settings.cache_monitor_interval_seconds)
        ),
    ]
    yield

    for task in tasks:
        task.cancel()
    for task in tasks:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    await services.db_engine.dispose()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Fleet Dispatch Matching API",
    lifespan=lifespan,
    debug=settings.debug,
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from fleet_dispatch.app.routes.cache import router as cache_router
from fleet_dispatch.app.routes.fleet import router as fleet_router
from fleet_dispatch.app.routes.matching import router as matching_router

app.include_router(matching_router)
app.include_router(cache_router)
app.include_router(fleet_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "fleet-dispatch"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "fleet_dispatch.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
