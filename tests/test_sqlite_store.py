from __future__ import annotations

import sqlite3
import tempfile

import pytest

from src.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore, is_unique_violation


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ? LIMIT 1;",
        (name,),
    ).fetchone()
    return row is not None


def _item(store: SQLiteStore, item_id: str = "0001") -> None:
    store.insert_work_item(
        item_id=item_id,
        item_number=int(item_id),
        display_id=f"HAL-{item_id}",
        title="t",
        body="",
        repo="acme/hal",
        column_id="col-todo",
    )


def test_reconcile_unlaunched_runs_marks_failed_and_records_event() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            _item(store)
            orphan = store.create_run(item_id="0001", agent_kind="implementation", repo="acme/hal", ref="main")
            store.set_run_status(orphan.run_id, "launching")
            launched = store.create_run(item_id="0001", agent_kind="qa", repo="acme/hal", ref="main")
            store.record_external_job_id(launched.run_id, "bc-1")
            store.set_run_status(launched.run_id, "running")

            reconciled = store.reconcile_unlaunched_runs(reason="server_restarted", older_than_s=-1)
            assert reconciled == 1

            row = store.get_run(run_id=orphan.run_id)
            assert row["status"] == "failed"
            assert row["error"] == "server_restarted"
            [evt] = store.list_stage_events(orphan.run_id)
            assert evt["stage"] == "failed"
            assert evt["payload"] == {"error": "server_restarted"}

            assert store.get_run(run_id=launched.run_id)["status"] == "running"
            assert [str(r["run_id"]) for r in store.list_inflight_runs()] == [launched.run_id]
        finally:
            store.close()


def test_migration_creates_suggestion_links_table() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            assert _table_exists(store._conn, "suggestion_links")
            assert store._get_schema_version() == SCHEMA_VERSION
        finally:
            store.close()
        # Reopening an up-to-date database is a no-op.
        SQLiteStore(f"{td}/app.db").close()


def test_duplicate_item_number_is_a_unique_violation(store: SQLiteStore) -> None:
    _item(store)
    with pytest.raises(sqlite3.IntegrityError) as e:
        _item(store)
    assert is_unique_violation(e.value)
    assert not is_unique_violation(sqlite3.OperationalError("database is locked"))


def test_job_id_is_write_once_and_terminal_rows_are_frozen(store: SQLiteStore) -> None:
    _item(store)
    run = store.create_run(item_id="0001", agent_kind="implementation", repo="acme/hal", ref="main")
    assert store.record_external_job_id(run.run_id, "bc-1") is True
    assert store.record_external_job_id(run.run_id, "bc-2") is False
    assert store.get_run(run_id=run.run_id)["external_job_id"] == "bc-1"

    assert store.finish_run(run.run_id, summary="ok", artifact_ref=None) is True
    assert store.finish_run(run.run_id, summary="again", artifact_ref=None) is False
    assert store.fail_run(run.run_id, error="late") is False
    assert store.set_run_status(run.run_id, "running") is False
    row = store.get_run(run_id=run.run_id)
    assert (row["status"], row["summary"], row["error"]) == ("finished", "ok", None)

    with pytest.raises(ValueError):
        store.set_run_status(run.run_id, "finished")


def test_find_active_run_ignores_terminal_runs(store: SQLiteStore) -> None:
    _item(store)
    first = store.create_run(item_id="0001", agent_kind="implementation", repo="acme/hal", ref="main")
    assert str(store.find_active_run(item_id="0001", agent_kind="implementation")["run_id"]) == first.run_id
    store.fail_run(first.run_id, error="x")
    assert store.find_active_run(item_id="0001", agent_kind="implementation") is None


def test_find_work_item_by_any_reference(store: SQLiteStore) -> None:
    _item(store, "0010")
    for ref in ("0010", "HAL-0010", "10", "OPS-10"):
        assert store.find_work_item(ref)["item_id"] == "0010"
    assert store.find_work_item("") is None
    assert store.find_work_item("HAL-0011") is None


def test_stage_event_seq_is_per_run(store: SQLiteStore) -> None:
    _item(store)
    a = store.create_run(item_id="0001", agent_kind="implementation", repo="acme/hal", ref="main")
    b = store.create_run(item_id="0001", agent_kind="qa", repo="acme/hal", ref="main")
    assert store.append_stage_event(a.run_id, "preparing", {}).seq == 1
    assert store.append_stage_event(a.run_id, "fetching_input", {}).seq == 2
    assert store.append_stage_event(b.run_id, "preparing", {}).seq == 1


def test_find_or_create_run_and_launch_claim(store: SQLiteStore) -> None:
    _item(store)
    row, created = store.find_or_create_run(item_id="0001", agent_kind="implementation", repo="acme/hal", ref="main")
    again, created_again = store.find_or_create_run(item_id="0001", agent_kind="implementation", repo="acme/hal", ref="main")
    assert (created, created_again) == (True, False)
    assert again["run_id"] == row["run_id"]

    run_id = str(row["run_id"])
    assert store.claim_run_for_launch(run_id) is True
    assert store.claim_run_for_launch(run_id) is False
    assert store.get_run(run_id=run_id)["status"] == "launching"


def test_suggestion_link_claim_is_exclusive(store: SQLiteStore) -> None:
    assert store.claim_suggestion_link(source_item_id="0001", suggestion_hash="h") is True
    assert store.claim_suggestion_link(source_item_id="0001", suggestion_hash="h") is False
    assert store.get_suggestion_link(source_item_id="0001", suggestion_hash="h") == ""

    store.release_suggestion_link(source_item_id="0001", suggestion_hash="h")
    assert store.get_suggestion_link(source_item_id="0001", suggestion_hash="h") is None
    assert store.claim_suggestion_link(source_item_id="0001", suggestion_hash="h") is True
    assert store.resolve_suggestion_link(source_item_id="0001", suggestion_hash="h", created_item_id="0002") is True
    store.release_suggestion_link(source_item_id="0001", suggestion_hash="h")
    assert store.get_suggestion_link(source_item_id="0001", suggestion_hash="h") == "0002"
