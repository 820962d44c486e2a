"""FastAPI app entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict

import uvicorn
from fastapi import FastAPI

from killall.api.deps import Services, build_services
from killall.api.routes.common import install_error_handlers
from killall.api.routes.config import router as config_router
from killall.api.routes.events import router as events_router
from killall.api.routes.executions import router as executions_router
from killall.api.routes.projects import router as projects_router
from killall.core.settings import EnvSettings
from killall.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the API; the lifespan owns the scheduler loop."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
        scheduler = app.state.services.scheduler
        await scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()

    app = FastAPI(title="killall API", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    install_error_handlers(app)
    app.include_router(projects_router)
    app.include_router(events_router)
    app.include_router(executions_router)
    app.include_router(config_router)

    @app.get("/api/v1/health", tags=["system"])
    async def health() -> dict[str, object]:
        current: Services | None = app.state.services
        if current is None:
            return {"status": "ok", "scheduler_running": False}
        return {
            "status": "ok",
            "scheduler_running": current.scheduler.is_running,
            "scheduler": asdict(current.scheduler.stats()),
            "executor": asdict(current.executor.stats()),
        }

    return app


def run() -> None:
    env = EnvSettings()
    setup_logging(env.log_format, env.log_level)
    logger.info("api_starting", host=env.api_host, port=env.api_port)
    uvicorn.run(create_app(build_services(env)), host=env.api_host, port=env.api_port, reload=False)
