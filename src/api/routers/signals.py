from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from src.api.dependencies import get_app_config
from src.config.load_config import AppConfig
from src.runtime.signals import board_bus, parse_signal
from src.storage.sqlite_store import SQLiteStore


router = APIRouter()


@router.post("/signals")
def post_signal(payload: Any = Body(...), cfg: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    """Deliver a WORK_STARTED / WORK_COMPLETED board signal. Stale signals are accepted as no-ops."""
    signal = parse_signal(payload)
    store = SQLiteStore()
    try:
        results = board_bus(store, cfg).publish(signal)
        return {
            "type": signal.type.value,
            "item_id": signal.item_id,
            "results": [r.to_dict() for r in results],
        }
    finally:
        store.close()
