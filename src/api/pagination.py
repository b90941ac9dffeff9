from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any

from src.api.errors import APIError


class CursorError(ValueError):
    pass


@dataclass(frozen=True)
class Cursor:
    """Keyset position: a sortable key (created_at, seq) plus the row id as tiebreaker."""

    sort_key: float
    item_id: str


def encode_cursor(cursor: Cursor) -> str:
    raw = json.dumps({"k": cursor.sort_key, "id": cursor.item_id}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(value: str) -> Cursor:
    s = (value or "").strip()
    if not s:
        raise CursorError("Empty cursor")

    # Add padding for base64 decoding.
    pad = "=" * ((4 - (len(s) % 4)) % 4)
    try:
        raw = base64.urlsafe_b64decode((s + pad).encode("ascii")).decode("utf-8")
        obj = json.loads(raw)
        return Cursor(sort_key=float(obj["k"]), item_id=str(obj["id"]))
    except Exception as e:
        raise CursorError("Invalid cursor") from e


def cursor_from_query(value: str | None) -> Cursor | None:
    if not value:
        return None
    try:
        return decode_cursor(value)
    except CursorError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e


def encode_page(page: dict[str, Any]) -> dict[str, Any]:
    """Replace a store page's raw `(sort_key, id)` next_cursor with its opaque form."""
    next_cursor = page.get("next_cursor")
    if next_cursor is not None:
        sort_key, item_id = next_cursor
        page["next_cursor"] = encode_cursor(Cursor(sort_key=float(sort_key), item_id=str(item_id)))
    return page
