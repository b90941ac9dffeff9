from __future__ import annotations

import importlib.metadata
import logging
import sqlite3
import time
from typing import Any

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_app_config
from src.api.errors import APIError
from src.config.load_config import AppConfig
from src.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore


_logger = logging.getLogger(__name__)

router = APIRouter()

_REPORTED_DEPS = ("fastapi", "pydantic", "uvicorn")


def _installed(name: str) -> str | None:
    try:
        return importlib.metadata.version(name)
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    """Liveness plus a round trip to the database."""
    try:
        store = SQLiteStore()
    except sqlite3.Error as e:
        _logger.warning("health check could not open the database: %s", e)
        raise APIError(status_code=503, code="unavailable", message="Database is not reachable.") from e
    try:
        store.count_runs_by_status()
    finally:
        store.close()
    return {"status": "ok"}


@router.get("/version")
def version(cfg: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    return {
        "service": "ticketflow",
        "api": "v1",
        "schema_version": SCHEMA_VERSION,
        "agent_kinds": sorted(cfg.agents),
        "deps": {name: _installed(name) for name in _REPORTED_DEPS},
    }


@router.get("/system/worker")
def system_worker(request: Request, cfg: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    """Background worker state and a board summary for operators."""
    worker = getattr(request.app.state, "run_worker", None)
    state: dict[str, Any] = {"enabled": worker is not None, "running": False}
    if worker is not None:
        state.update(worker.status_snapshot())

    store = SQLiteStore()
    try:
        inflight = len(store.list_inflight_runs())
        board = {
            "runs_by_status": store.count_runs_by_status(),
            "items_by_column": store.count_items_by_column(),
            "inflight_runs": inflight,
        }
    finally:
        store.close()
    return {
        "ts": time.time(),
        "worker": state,
        "agent_service_configured": bool(cfg.service.api_key()),
        "board": board,
        "startup": {"reconciled_runs": getattr(request.app.state, "reconciled_runs", 0)},
    }
