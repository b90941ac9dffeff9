from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from src.api.errors import (
    APIError,
    api_error_handler,
    unhandled_error_handler,
    validation_error_handler,
    workflow_error_handler,
)
from src.runtime.worker import RunWorker
from src.storage.sqlite_store import SQLiteStore
from src.utils.logging_setup import configure_logging
from src.workflow.errors import WorkflowError

from .routers.health import router as health_router
from .routers.runs import router as runs_router
from .routers.signals import router as signals_router
from .routers.status import router as status_router
from .routers.tickets import router as tickets_router


_logger = logging.getLogger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("TICKETFLOW_CORS_ORIGINS", "").strip()
    if not raw:
        # Safe local defaults: allow typical dev ports.
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
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        # Runs left without an external job by a previous process can never progress.
        if _env_bool("TICKETFLOW_RECONCILE_ON_STARTUP", True):
            store = SQLiteStore()
            try:
                reconciled = store.reconcile_unlaunched_runs(reason="Launch was interrupted before the job was submitted.")
                app.state.reconciled_runs = int(reconciled)
                if reconciled:
                    _logger.info("reconciled %d interrupted runs", reconciled)
            finally:
                store.close()
        else:
            app.state.reconciled_runs = 0

        # Single background worker (single-instance assumption).
        if _env_bool("TICKETFLOW_ENABLE_WORKER", True):
            worker = RunWorker()
            worker.start()
            app.state.run_worker = worker
        try:
            yield
        finally:
            worker = getattr(app.state, "run_worker", None)
            if worker is not None:
                worker.stop()

    app = FastAPI(title="ticketflow API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(WorkflowError, workflow_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(tickets_router, prefix="/api/v1", tags=["tickets"])
    app.include_router(runs_router, prefix="/api/v1", tags=["runs"])
    app.include_router(signals_router, prefix="/api/v1", tags=["signals"])
    app.include_router(status_router, prefix="/api/v1", tags=["status"])

    return app


app = create_app()
