from __future__ import annotations

import json
import sqlite3

import pytest

from src.config.load_config import AppConfig
from src.runtime import completion
from src.runtime.completion import CompletionHandler, RunOutcome, Suggestion, parse_suggestions
from src.runtime.stage_events import StageEventStream
from src.storage.sqlite_store import SQLiteStore
from src.workflow.tickets import create_work_item


def _running_run(store: SQLiteStore, cfg: AppConfig, *, kind: str, column: str) -> tuple[str, str]:
    item = create_work_item(store, cfg, title="Footer", body="## Goal\n\nFooter.\n", repo="acme/hal", column_id=column)
    run = store.create_run(item_id=item.item_id, agent_kind=kind, repo="acme/hal", ref="main")
    store.record_external_job_id(run.run_id, "job-1")
    store.set_run_status(run.run_id, "running")
    return item.item_id, run.run_id


def test_completion_applies_side_effects_once(store: SQLiteStore, app_config: AppConfig) -> None:
    item_id, run_id = _running_run(store, app_config, kind="implementation", column="col-doing")
    handler = CompletionHandler(store, app_config)
    outcome = RunOutcome(summary="Footer added.", artifact_ref="https://github.com/acme/hal/pull/9")

    first = handler.complete(run_id, outcome)
    assert first.already_finished is False
    assert first.moved is True
    assert first.body_updated is True
    assert first.actions == {"worklog": True}
    assert first.run["status"] == "finished"

    item = store.get_work_item(item_id=item_id)
    assert item["column_id"] == "col-qa"
    assert "## Latest run outcome" in item["body"]
    assert "- Artifact: https://github.com/acme/hal/pull/9" in item["body"]

    artifacts = store.list_artifacts(item_id=item_id)
    assert [a["title"] for a in artifacts] == ["Worklog for HAL-0001"]

    before = store.total_changes
    second = handler.complete(run_id, outcome)
    assert second.already_finished is True
    assert second.run["summary"] == "Footer added."
    assert store.total_changes == before


def test_partial_completion_rerun_converges(store: SQLiteStore, app_config: AppConfig) -> None:
    item_id, run_id = _running_run(store, app_config, kind="implementation", column="col-doing")
    handler = CompletionHandler(store, app_config)
    outcome = RunOutcome(summary="Footer added.")

    # Simulate a crash after the move and body write but before the run was marked finished.
    handler.complete(run_id, outcome)
    store._conn.execute("UPDATE runs SET status = 'running', finished_at = NULL WHERE run_id = ?;", (run_id,))
    store._conn.commit()
    body_before = store.get_work_item(item_id=item_id)["body"]

    again = handler.complete(run_id, outcome)
    assert again.moved is False
    assert again.body_updated is False
    assert again.actions == {"worklog": False}
    assert again.run["status"] == "finished"
    assert store.get_work_item(item_id=item_id)["body"] == body_before
    assert store.get_work_item(item_id=item_id)["column_id"] == "col-qa"


def test_completion_emits_final_event(store: SQLiteStore, app_config: AppConfig) -> None:
    item_id, run_id = _running_run(store, app_config, kind="implementation", column="col-doing")
    stream = StageEventStream(run_id=run_id, item_id=item_id, agent_kind="implementation")
    stream.emit("running", detail="FINISHED")

    CompletionHandler(store, app_config).complete(run_id, RunOutcome(summary="ok", artifact_ref="ref"), stream)
    last = stream.last
    assert last is not None and last.stage.value == "completed"
    assert (last.detail, last.artifact_ref) == ("ok", "ref")


def test_review_creates_deduplicated_suggestion_tickets(store: SQLiteStore, app_config: AppConfig) -> None:
    item_id, run_id = _running_run(store, app_config, kind="review", column="col-process-review")
    summary = "Review done.\n```json\n" + json.dumps(
        [
            {"text": "Add a checklist for QA handoff", "justification": "QA missed a criterion."},
            {"text": "Add a checklist for   QA handoff ", "justification": "duplicate wording"},
            {"text": "", "justification": "empty text is ignored"},
            {"text": "Document the release steps", "justification": "Nobody knew them."},
        ]
    ) + "\n```\n"

    result = CompletionHandler(store, app_config).complete(run_id, RunOutcome(summary=summary))
    created = result.actions["suggestions"]
    assert len(created) == 2
    assert store.get_work_item(item_id=item_id)["column_id"] == "col-done"
    for new_id in created:
        row = store.get_work_item(item_id=new_id)
        assert row["column_id"] == "col-unassigned"
        assert "Suggested by review of" in row["body"]

    # A second review run with the same suggestions creates nothing new.
    run2 = store.create_run(item_id=item_id, agent_kind="review", repo="acme/hal", ref="main")
    store.record_external_job_id(run2.run_id, "job-2")
    again = CompletionHandler(store, app_config).complete(run2.run_id, RunOutcome(summary=summary))
    assert again.actions["suggestions"] == []
    assert len(store.list_item_ids()) == 3


def test_parse_suggestions_accepts_bare_and_embedded_arrays() -> None:
    bare = '[{"text": "A", "justification": "why"}]'
    assert parse_suggestions(bare) == [Suggestion(text="A", justification="why")]

    embedded = 'Here you go: [{"text": "B [draft]", "justification": "see ]"}] thanks'
    assert parse_suggestions(embedded) == [Suggestion(text="B [draft]", justification="see ]")]

    assert parse_suggestions("no suggestions today") == []
    assert parse_suggestions('{"text": "not a list"}') == []


def test_suggestion_title_truncated() -> None:
    s = Suggestion(text="x" * 150, justification="j")
    assert len(s.title) == 100
    assert s.title.endswith("...")
    assert Suggestion(text="Same  text", justification="a").hash == Suggestion(text="same text ", justification="b").hash


def test_overlapping_review_completion_creates_each_suggestion_once(
    store: SQLiteStore, app_config: AppConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    item_id, run_id = _running_run(store, app_config, kind="review", column="col-process-review")
    handler = CompletionHandler(store, app_config)
    outcome = RunOutcome(summary=json.dumps([{"text": "Add tests", "justification": "None exist."}]))
    overlapping = []

    def create_while_another_completes(*args, **kwargs):
        if not overlapping:
            overlapping.append(handler.complete(run_id, outcome))
        return create_work_item(*args, **kwargs)

    monkeypatch.setattr(completion, "create_work_item", create_while_another_completes)
    result = handler.complete(run_id, outcome)

    assert overlapping[0].actions["suggestions"] == []
    [created] = result.actions["suggestions"]
    assert len(store.list_item_ids()) == 2
    link = store.get_suggestion_link(source_item_id=item_id, suggestion_hash=Suggestion(text="Add tests", justification="").hash)
    assert link == created


def test_failed_suggestion_ticket_releases_its_claim(
    store: SQLiteStore, app_config: AppConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    _, run_id = _running_run(store, app_config, kind="review", column="col-process-review")
    outcome = RunOutcome(summary=json.dumps([{"text": "Add tests", "justification": "None exist."}]))

    def refuse(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(completion, "create_work_item", refuse)
    with pytest.raises(sqlite3.OperationalError):
        CompletionHandler(store, app_config).complete(run_id, outcome)
    monkeypatch.setattr(completion, "create_work_item", create_work_item)

    result = CompletionHandler(store, app_config).complete(run_id, outcome)
    assert len(result.actions["suggestions"]) == 1
    assert result.run["status"] == "finished"
