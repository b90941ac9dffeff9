from __future__ import annotations

import sqlite3

import pytest

from src.config.load_config import AppConfig
from src.storage.sqlite_store import SQLiteStore
from src.workflow.errors import AllocationExhausted, TransientCollision
from src.workflow.ids import IdAllocator, display_id, display_prefix, format_item_id, parse_item_number
from src.workflow.tickets import create_work_item


def _seed(store: SQLiteStore, number: int) -> None:
    item_id = format_item_id(number)
    store.insert_work_item(
        item_id=item_id,
        item_number=number,
        display_id=f"HAL-{item_id}",
        title=f"seed {item_id}",
        body="",
        repo="acme/hal",
        column_id="col-todo",
    )


def _inserter(store: SQLiteStore):
    def _insert(number: int, item_id: str) -> None:
        store.insert_work_item(
            item_id=item_id,
            item_number=number,
            display_id=f"HAL-{item_id}",
            title="new",
            body="",
            repo="acme/hal",
            column_id="col-todo",
        )

    return _insert


def test_parse_item_number_uses_last_digit_run() -> None:
    assert parse_item_number("0010") == 10
    assert parse_item_number("HAL-0065") == 65
    assert parse_item_number("v2-ticket-0007") == 7
    assert parse_item_number("no digits") is None


def test_display_prefix() -> None:
    assert display_prefix("owner/my-hal") == "HAL"
    assert display_prefix("acme/portal") == "PORTAL"
    assert display_prefix("acme/kanbanboard") == "KANB"
    assert display_prefix("acme/1234") == "PRJ"
    assert display_prefix("") == "PRJ"
    assert display_id("0042", repo="owner/my-hal") == "HAL-0042"
    assert display_id("0042", repo="owner/my-hal", prefix="OPS") == "OPS-0042"


def test_concurrent_allocators_get_distinct_ids(store: SQLiteStore) -> None:
    for n in (1, 2, 4):
        _seed(store, n)

    # Both callers read the same snapshot before either writes.
    snapshot = store.list_item_ids()
    assert snapshot == ["0001", "0002", "0004"]

    allocator = IdAllocator()
    first = allocator.allocate(snapshot, _inserter(store))
    second = allocator.allocate(snapshot, _inserter(store))

    assert {first.item_id, second.item_id} == {"0005", "0006"}
    assert first.attempts == 1
    assert second.attempts == 2


def test_empty_store_starts_at_one() -> None:
    seen: list[str] = []
    result = IdAllocator().allocate([], lambda n, item_id: seen.append(item_id))
    assert result.item_id == "0001"
    assert seen == ["0001"]


def test_non_collision_error_fails_fast() -> None:
    calls: list[int] = []

    def _insert(number: int, item_id: str) -> None:
        calls.append(number)
        raise sqlite3.OperationalError("database is locked")

    with pytest.raises(sqlite3.OperationalError):
        IdAllocator().allocate(["0003"], _insert)
    assert calls == [4]


def test_exhaustion_reports_last_attempted_id() -> None:
    def _insert(number: int, item_id: str) -> None:
        raise TransientCollision(item_id)

    with pytest.raises(AllocationExhausted) as e:
        IdAllocator(max_attempts=3).allocate(["0009"], _insert)
    assert e.value.last_attempted_id == "0012"
    assert e.value.attempts == 3


def test_existing_ids_are_read_once() -> None:
    reads = 0

    def _ids():
        nonlocal reads
        reads += 1
        yield "0001"

    attempts: list[str] = []

    def _insert(number: int, item_id: str) -> None:
        attempts.append(item_id)
        if len(attempts) < 3:
            raise sqlite3.IntegrityError("UNIQUE constraint failed: work_items.item_id")

    result = IdAllocator().allocate(_ids(), _insert)
    assert reads == 1
    assert attempts == ["0002", "0003", "0004"]
    assert result.item_id == "0004"


def test_create_work_item_appends_to_column(store: SQLiteStore, app_config: AppConfig) -> None:
    a = create_work_item(store, app_config, title="First", repo="owner/my-hal")
    b = create_work_item(store, app_config, title="Second", repo="owner/my-hal")
    assert (a.item_id, b.item_id) == ("0001", "0002")
    assert a.display_id == "HAL-0001"
    assert a.column_id == app_config.board.default_column
    assert (a.position, b.position) == (0, 1)
