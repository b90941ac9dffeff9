from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from src.config.load_config import AgentKindConfig, AppConfig
from src.runtime.stage_events import StageEventStream, StageName
from src.storage.sqlite_store import SQLiteStore, run_row_to_dict
from src.utils.json_extract import JSONExtractionError, extract_first_json_array
from src.utils.markdown import upsert_section
from src.workflow.errors import NotFound, ValidationError
from src.workflow.state_machine import StateMachine
from src.workflow.tickets import create_work_item


_logger = logging.getLogger(__name__)

OUTCOME_HEADING = "Latest run outcome"
_TITLE_MAX = 100


@dataclass(frozen=True)
class RunOutcome:
    summary: str
    artifact_ref: str | None = None
    raw_status: str = "FINISHED"


@dataclass(frozen=True)
class Suggestion:
    text: str
    justification: str

    @property
    def title(self) -> str:
        t = " ".join(self.text.split())
        return t if len(t) <= _TITLE_MAX else t[: _TITLE_MAX - 3] + "..."

    @property
    def hash(self) -> str:
        normalized = re.sub(r"\s+", " ", self.text.strip().lower())
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CompletionResult:
    run: dict[str, Any]
    already_finished: bool
    moved: bool = False
    body_updated: bool = False
    actions: dict[str, Any] = field(default_factory=dict)


def parse_suggestions(text: str) -> list[Suggestion]:
    """Suggestions from review output: a JSON array of {text, justification} objects."""
    try:
        items = extract_first_json_array(text)
    except JSONExtractionError:
        return []
    out: list[Suggestion] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        t = str(item.get("text") or "").strip()
        j = str(item.get("justification") or "").strip()
        if t and j:
            out.append(Suggestion(text=t, justification=j))
    return out


def outcome_section(*, agent_kind: str, run_id: str, outcome: RunOutcome) -> str:
    lines = [f"- Agent: {agent_kind}", f"- Run: {run_id}"]
    if outcome.artifact_ref:
        lines.append(f"- Artifact: {outcome.artifact_ref}")
    summary = outcome.summary.strip() or "(no summary)"
    return "\n".join(lines) + "\n\n" + summary


class CompletionHandler:
    """Applies the side effects of a successful run exactly once.

    Order: guarded agent-complete move, outcome section in the item body, sync
    actions, then the guarded `finished` update that marks completion as done.
    Each step is idempotent, so a crash part-way through re-runs the same sequence.
    """

    def __init__(self, store: SQLiteStore, config: AppConfig) -> None:
        self._store = store
        self._config = config
        self._machine = StateMachine(store, config.board)

    def complete(self, run_id: str, outcome: RunOutcome, stream: StageEventStream | None = None) -> CompletionResult:
        row = self._store.get_run(run_id=run_id)
        if row is None:
            raise NotFound(f"Run not found: {run_id}")
        if str(row["status"]) in ("finished", "failed"):
            return CompletionResult(run=run_row_to_dict(row), already_finished=True)

        kind = str(row["agent_kind"])
        agent = self._config.agent(kind)
        if agent is None:
            raise ValidationError(f"Unknown agent kind on run {run_id}: {kind!r}")
        item_id = str(row["item_id"])

        move = self._machine.move_work_item(item_id, agent.complete_column, "agent-complete")

        item = self._store.get_work_item(item_id=item_id)
        if item is None:
            raise NotFound(f"Work item not found: {item_id}")
        new_body = upsert_section(
            str(item["body"]),
            OUTCOME_HEADING,
            outcome_section(agent_kind=kind, run_id=run_id, outcome=outcome),
        )
        body_updated = new_body != str(item["body"]) and self._store.update_work_item_body(item_id=item_id, body=new_body)

        actions: dict[str, Any] = {}
        for action in agent.sync_actions:
            if action == "worklog":
                actions["worklog"] = self._sync_worklog(item, row, outcome)
            elif action == "suggestions":
                actions["suggestions"] = self._sync_suggestions(item, agent, outcome)

        if self._store.finish_run(run_id, summary=outcome.summary, artifact_ref=outcome.artifact_ref):
            _logger.info("run %s finished (%s %s)", run_id, kind, item_id)

        if stream is not None and not stream.closed:
            stream.emit(StageName.COMPLETED, detail=outcome.summary, artifact_ref=outcome.artifact_ref)

        final = self._store.get_run(run_id=run_id)
        return CompletionResult(
            run=run_row_to_dict(final if final is not None else row),
            already_finished=False,
            moved=move.moved,
            body_updated=bool(body_updated),
            actions=actions,
        )

    def _sync_worklog(self, item: Any, run: Any, outcome: RunOutcome) -> bool:
        progress = run_row_to_dict(run)["progress"]
        lines = [f"# Worklog for {item['display_id']}", "", f"- Run: {run['run_id']}", f"- Agent: {run['agent_kind']}"]
        if outcome.artifact_ref:
            lines.append(f"- Artifact: {outcome.artifact_ref}")
        lines += ["", "## Summary", "", outcome.summary.strip() or "(no summary)"]
        if progress:
            lines += ["", "## Progress", ""]
            lines += [f"- {p.get('message', '')}" for p in progress]
        return self._store.upsert_artifact(
            item_id=str(item["item_id"]),
            agent_kind=str(run["agent_kind"]),
            title=f"Worklog for {item['display_id']}",
            body="\n".join(lines) + "\n",
        )

    def _sync_suggestions(self, item: Any, agent: AgentKindConfig, outcome: RunOutcome) -> list[str]:
        source_id = str(item["item_id"])
        created: list[str] = []
        for s in parse_suggestions(outcome.summary):
            # Claim first: an overlapping completion of the same review skips what we hold.
            if not self._store.claim_suggestion_link(source_item_id=source_id, suggestion_hash=s.hash):
                continue
            body = "\n".join(
                [
                    "## Goal",
                    "",
                    s.text,
                    "",
                    "## Justification",
                    "",
                    s.justification,
                    "",
                    f"Suggested by review of {item['display_id']}.",
                ]
            )
            try:
                record = create_work_item(
                    self._store,
                    self._config,
                    title=s.title,
                    body=body + "\n",
                    repo=str(item["repo"]),
                    column_id=agent.suggestion_column,
                )
            except Exception:
                self._store.release_suggestion_link(source_item_id=source_id, suggestion_hash=s.hash)
                raise
            self._store.resolve_suggestion_link(
                source_item_id=source_id,
                suggestion_hash=s.hash,
                created_item_id=record.item_id,
            )
            created.append(record.item_id)
        return created
