from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.api.dependencies import get_app_config
from src.api.errors import APIError
from src.config.load_config import AppConfig
from src.storage.sqlite_store import SQLiteStore
from src.workflow.state_machine import StateMachine
from src.workflow.tickets import create_work_item


router = APIRouter()


class CreateTicketRequest(BaseModel):
    title: str = Field(min_length=1)
    body: str = Field(default="")
    repo: str = Field(default="")
    column_id: str | None = Field(default=None)


class MoveTicketRequest(BaseModel):
    column_id: str = Field(min_length=1)
    trigger: str = Field(default="manual")


def _item_dict(row: Any) -> dict[str, Any]:
    return {
        "item_id": row["item_id"],
        "item_number": int(row["item_number"]),
        "display_id": row["display_id"],
        "title": row["title"],
        "body": row["body"],
        "repo": row["repo"],
        "column_id": row["column_id"],
        "position": int(row["position"]),
        "moved_at": float(row["moved_at"]) if row["moved_at"] is not None else None,
        "created_at": float(row["created_at"]),
        "updated_at": float(row["updated_at"]),
    }


@router.post("/tickets")
def create_ticket(body: CreateTicketRequest, cfg: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        record = create_work_item(
            store,
            cfg,
            title=body.title,
            body=body.body,
            repo=body.repo,
            column_id=body.column_id,
        )
        row = store.get_work_item(item_id=record.item_id)
        return {"ticket": _item_dict(row)}
    finally:
        store.close()


@router.get("/tickets")
def list_tickets(
    column_id: str | None = Query(default=None),
    cfg: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    if column_id and cfg.board.column(column_id) is None:
        raise APIError(status_code=400, code="invalid_argument", message=f"Unknown column: {column_id!r}")
    store = SQLiteStore()
    try:
        return {
            "items": store.list_work_items(column_id=column_id or None),
            "columns": [{"id": c.id, "label": c.label} for c in cfg.board.columns],
        }
    finally:
        store.close()


@router.get("/tickets/{item_id}")
def get_ticket(item_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        row = store.find_work_item(item_id)
        if row is None:
            raise APIError(status_code=404, code="not_found", message="Ticket not found.")
        return {
            "ticket": _item_dict(row),
            "artifacts": store.list_artifacts(item_id=str(row["item_id"])),
        }
    finally:
        store.close()


@router.post("/tickets/{item_id}/move")
def move_ticket(item_id: str, body: MoveTicketRequest, cfg: AppConfig = Depends(get_app_config)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        row = store.find_work_item(item_id)
        if row is None:
            raise APIError(status_code=404, code="not_found", message="Ticket not found.")
        result = StateMachine(store, cfg.board).move_work_item(str(row["item_id"]), body.column_id, body.trigger)
        return result.to_dict()
    finally:
        store.close()
