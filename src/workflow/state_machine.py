from __future__ import annotations

import logging
from dataclasses import dataclass

from src.config.load_config import TRIGGERS, BoardConfig
from src.storage.sqlite_store import SQLiteStore
from src.workflow.errors import NotFound, StaleTransition, ValidationError


_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MoveResult:
    moved: bool
    item_id: str
    column_id: str
    position: int | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "moved": self.moved,
            "item_id": self.item_id,
            "column_id": self.column_id,
            "position": self.position,
            "reason": self.reason,
        }


class StateMachine:
    """Guarded column transitions for work items.

    A move is applied only when the item's current column is an allowed source for
    (target, trigger). Everything else is a silent no-op: late or duplicate signals
    must never drag an item backwards.
    """

    def __init__(self, store: SQLiteStore, board: BoardConfig) -> None:
        self._store = store
        self._board = board

    def move_work_item(self, item_id: str, target_column: str, trigger: str) -> MoveResult:
        if trigger not in TRIGGERS:
            raise ValidationError(f"Unknown trigger: {trigger!r}")
        if self._board.column(target_column) is None:
            raise ValidationError(f"Unknown column: {target_column!r}")

        row = self._store.get_work_item(item_id=item_id)
        if row is None:
            raise NotFound(f"Work item not found: {item_id}")
        current = str(row["column_id"])

        if current == target_column:
            return MoveResult(
                moved=False,
                item_id=item_id,
                column_id=current,
                position=int(row["position"]),
                reason="already_in_column",
            )

        if current not in self._board.allowed_sources(target_column, trigger):
            self._log_stale(item_id, current=current, target=target_column, trigger=trigger)
            return MoveResult(moved=False, item_id=item_id, column_id=current, reason="source_not_allowed")

        swapped = self._store.move_work_item_guarded(
            item_id=item_id,
            expected_column=current,
            target_column=target_column,
        )
        if not swapped:
            # Another writer moved the item between our read and the update.
            after = self._store.get_work_item(item_id=item_id)
            now = str(after["column_id"]) if after is not None else None
            self._log_stale(item_id, current=now, target=target_column, trigger=trigger)
            return MoveResult(moved=False, item_id=item_id, column_id=now or current, reason="concurrent_update")

        after = self._store.get_work_item(item_id=item_id)
        position = int(after["position"]) if after is not None else None
        _logger.info("moved %s %s -> %s (%s)", item_id, current, target_column, trigger)
        return MoveResult(moved=True, item_id=item_id, column_id=target_column, position=position)

    def _log_stale(self, item_id: str, *, current: str | None, target: str, trigger: str) -> None:
        _logger.info("%s", StaleTransition(item_id, current=current, target=target, trigger=trigger))
