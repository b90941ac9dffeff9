from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from src.api.errors import APIError
from src.storage.sqlite_store import SQLiteStore
from src.storage.status_journal import StatusSnapshot, load_snapshots, save_snapshots


router = APIRouter()


class SaveStatusRequest(BaseModel):
    snapshots: list[dict[str, Any]] = Field(default_factory=list)


@router.get("/projects/{project_id:path}/status")
def get_project_status(project_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        result = load_snapshots(store, project_id)
        return {
            "project_id": project_id,
            "snapshots": [s.to_dict() for s in result.snapshots],
            "error": result.error,
            "was_reset": result.was_reset,
        }
    finally:
        store.close()


@router.put("/projects/{project_id:path}/status")
def put_project_status(project_id: str, body: SaveStatusRequest) -> dict[str, Any]:
    snapshots: list[StatusSnapshot] = []
    for i, raw in enumerate(body.snapshots):
        try:
            snapshots.append(StatusSnapshot.from_dict(raw))
        except ValueError as e:
            raise APIError(
                status_code=400,
                code="invalid_argument",
                message=f"Invalid snapshot at index {i}.",
                details={"error": str(e)},
            ) from e
    ids = [s.conversation_id for s in snapshots]
    if len(set(ids)) != len(ids):
        raise APIError(status_code=400, code="invalid_argument", message="Duplicate conversation ids.")

    store = SQLiteStore()
    try:
        save_snapshots(store, project_id, snapshots)
        return {"project_id": project_id, "saved": len(snapshots)}
    finally:
        store.close()
