from __future__ import annotations

import json
import logging
import queue
import threading
from typing import Any, Iterator

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from src.api.dependencies import get_agent_client, get_app_config
from src.api.errors import APIError
from src.api.pagination import cursor_from_query, encode_page
from src.config.load_config import AppConfig
from src.providers.cloud_agent import CloudAgentClient
from src.runtime.coordinator import AdvanceResult, LaunchRequest, RunCoordinator
from src.runtime.stage_events import StageEvent
from src.storage.sqlite_store import SQLiteStore, run_row_to_dict
from src.utils.cancel import CancellationToken, CancelledError
from src.workflow.errors import NotFound, ValidationError, WorkflowError


_logger = logging.getLogger(__name__)

router = APIRouter()


class WorkRunRequest(BaseModel):
    run_id: str = Field(min_length=1)
    budget_ms: int | None = Field(default=None)


class LaunchRunRequest(BaseModel):
    item_id: str = Field(min_length=1)
    agent_kind: str = Field(min_length=1)
    instruction: str = Field(default="")
    caller: str = Field(default="")
    budget_ms: int | None = Field(default=None)


def _result_record(result: AdvanceResult) -> dict[str, Any]:
    out: dict[str, Any] = {
        "type": "result",
        "done": result.done,
        "run_id": result.run.get("run_id"),
        "status": result.run.get("status"),
        "artifact_ref": result.artifact_ref,
    }
    if result.error:
        out["error"] = result.error
    else:
        out["content"] = result.content
    return out


@router.post("/runs/work")
def work_run(
    body: WorkRunRequest,
    cfg: AppConfig = Depends(get_app_config),
    client: CloudAgentClient = Depends(get_agent_client),
) -> dict[str, Any]:
    """Advance one run by at most `budget_ms`; callers repeat until `done` is true."""
    store = SQLiteStore()
    try:
        result = RunCoordinator(store, cfg, client).advance(body.run_id, budget_ms=body.budget_ms)
        return {"done": result.done, "run": result.run, "content": result.content, "error": result.error}
    finally:
        store.close()


def _launch_lines(
    body: LaunchRunRequest,
    cfg: AppConfig,
    client: CloudAgentClient,
) -> Iterator[str]:
    lines: "queue.Queue[str | None]" = queue.Queue()
    cancel = CancellationToken()

    def _on_event(event: StageEvent) -> None:
        lines.put(event.to_json_line())

    def _work() -> None:
        store = SQLiteStore()
        final: dict[str, Any] | None
        try:
            # One budget slice; an unfinished run ends with done=false and continues via /runs/work.
            result = RunCoordinator(store, cfg, client).launch(
                LaunchRequest(
                    item_id=body.item_id,
                    agent_kind=body.agent_kind,
                    instruction=body.instruction,
                    caller=body.caller,
                ),
                budget_ms=body.budget_ms,
                listener=_on_event,
                cancel=cancel,
            )
            final = _result_record(result)
        except CancelledError:
            _logger.info("launch stream for %s closed by the client", body.item_id)
            final = None
        except WorkflowError as e:
            final = {"type": "result", "done": True, "run_id": None, "error": str(e), "artifact_ref": None}
        except Exception:
            _logger.exception("launch stream for %s failed", body.item_id)
            final = {"type": "result", "done": True, "run_id": None, "error": "Internal server error.", "artifact_ref": None}
        finally:
            store.close()
        if final is not None:
            lines.put(json.dumps(final, ensure_ascii=False) + "\n")
        lines.put(None)

    threading.Thread(target=_work, name="ticketflow-launch-stream", daemon=True).start()
    try:
        while True:
            line = lines.get()
            if line is None:
                return
            yield line
    finally:
        # Stops the polling slice when the client disconnects before the result.
        cancel.request_cancel()


@router.post("/runs/launch")
def launch_run(
    body: LaunchRunRequest,
    cfg: AppConfig = Depends(get_app_config),
    client: CloudAgentClient = Depends(get_agent_client),
) -> StreamingResponse:
    """Launch (or resume) a run and stream its stage events as NDJSON.

    Input and credential problems are reported with the normal error envelope before
    the stream starts; everything after that ends the stream with a `result` record.
    """
    if cfg.agent(body.agent_kind) is None:
        raise ValidationError(f"Unknown agent kind: {body.agent_kind!r}")
    store = SQLiteStore()
    try:
        if store.find_work_item(body.item_id) is None:
            raise NotFound(f"Work item not found: {body.item_id}")
    finally:
        store.close()
    client.ensure_configured()

    return StreamingResponse(_launch_lines(body, cfg, client), media_type="application/x-ndjson")


@router.get("/runs")
def list_runs(
    item_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        cursor_obj = cursor_from_query(cursor)
        page = store.list_runs_page(
            item_id=(item_id.strip() if item_id else None),
            limit=int(limit),
            cursor=(cursor_obj.sort_key, cursor_obj.item_id) if cursor_obj is not None else None,
            statuses=status or None,
        )
        return encode_page(page)
    finally:
        store.close()


@router.get("/runs/{run_id}")
def get_run(run_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        row = store.get_run(run_id=run_id)
        if row is None:
            raise APIError(status_code=404, code="not_found", message="Run not found.")
        return {"run": run_row_to_dict(row)}
    finally:
        store.close()


@router.get("/runs/{run_id}/events")
def list_run_events(
    run_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    cursor: str | None = Query(default=None),
) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        if store.get_run(run_id=run_id) is None:
            raise APIError(status_code=404, code="not_found", message="Run not found.")
        cursor_obj = cursor_from_query(cursor)
        page = store.list_events_page(
            run_id=run_id,
            limit=int(limit),
            after_seq=int(cursor_obj.sort_key) if cursor_obj is not None else None,
        )
        return encode_page(page)
    finally:
        store.close()
