from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from taskpulse.api.errors import (
    APIError,
    api_error_handler,
    run_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from taskpulse.config.load_config import load_app_config
from taskpulse.runtime.errors import RunError
from taskpulse.runtime.worker import RunWorker
from taskpulse.utils.logging import configure_logging

from .routers.health import router as health_router
from .routers.runs import router as runs_router
from .routers.stats import router as stats_router
from .routers.tasks import router as tasks_router


logger = logging.getLogger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("TASKPULSE_CORS_ORIGINS", "").strip()
    if not raw:
        # Local dev defaults.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        configure_logging()
        config = load_app_config()
        app.state.config = config

        # Single background worker (single-instance assumption).
        if _env_bool("TASKPULSE_ENABLE_WORKER", True):
            worker = RunWorker(config=config.worker, policy=config.simulation)
            worker.start()
            app.state.run_worker = worker
        logger.info("TaskPulse API started")
        try:
            yield
        finally:
            worker = getattr(app.state, "run_worker", None)
            if worker is not None:
                worker.stop()

    app = FastAPI(title="TaskPulse API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RunError, run_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_from_env(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(tasks_router, prefix="/api/v1", tags=["tasks"])
    app.include_router(runs_router, prefix="/api/v1", tags=["runs"])
    app.include_router(stats_router, prefix="/api/v1", tags=["stats"])

    return app


app = create_app()
