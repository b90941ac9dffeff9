from __future__ import annotations

import logging

from src.config.load_config import AppConfig
from src.storage.sqlite_store import SQLiteStore, WorkItemRecord
from src.workflow.errors import ValidationError
from src.workflow.ids import IdAllocator, display_id


_logger = logging.getLogger(__name__)


def create_work_item(
    store: SQLiteStore,
    config: AppConfig,
    *,
    title: str,
    body: str = "",
    repo: str = "",
    column_id: str | None = None,
) -> WorkItemRecord:
    """Create a ticket with the next free sequential id.

    The column defaults to the board's default column; the display id prefix comes
    from config when pinned, otherwise from the repository name.
    """
    title = (title or "").strip()
    if not title:
        raise ValidationError("title must not be empty.")
    target_column = (column_id or config.board.default_column).strip()
    if config.board.column(target_column) is None:
        raise ValidationError(f"Unknown column: {target_column!r}")
    repo = (repo or config.coordinator.default_repo).strip()

    created: list[WorkItemRecord] = []

    def _insert(number: int, item_id: str) -> None:
        created.append(
            store.insert_work_item(
                item_id=item_id,
                item_number=number,
                display_id=display_id(item_id, repo=repo, prefix=config.board.display_prefix),
                title=title,
                body=body,
                repo=repo,
                column_id=target_column,
            )
        )

    allocator = IdAllocator(max_attempts=config.allocator.max_attempts, width=config.allocator.id_width)
    result = allocator.allocate(store.list_item_ids(), _insert)
    _logger.info("created work item %s in %s (attempts=%d)", result.item_id, target_column, result.attempts)
    return created[-1]
