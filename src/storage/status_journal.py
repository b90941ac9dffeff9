from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from src.storage.sqlite_store import SQLiteStore, TERMINAL_RUN_STATUSES


_logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_CAP = 50


@dataclass(frozen=True)
class ProgressEntry:
    ts: float
    message: str


@dataclass(frozen=True)
class TranscriptMessage:
    id: int
    role: str
    content: str
    ts: float


@dataclass(frozen=True)
class StatusSnapshot:
    agent_kind: str
    instance: int
    status: str
    run_id: str | None = None
    progress: tuple[ProgressEntry, ...] = ()
    last_error: str | None = None
    transcript: tuple[TranscriptMessage, ...] = ()
    created_at: float = field(default_factory=time.time)

    @property
    def conversation_id(self) -> str:
        return conversation_id(self.agent_kind, self.instance)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "agent_kind": self.agent_kind,
            "instance": self.instance,
            "status": self.status,
            "run_id": self.run_id,
            "progress": [{"ts": p.ts, "message": p.message} for p in self.progress],
            "last_error": self.last_error,
            "transcript": [{"id": m.id, "role": m.role, "content": m.content, "ts": m.ts} for m in self.transcript],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, obj: Any) -> "StatusSnapshot":
        """Strict parse; raises ValueError on any malformed field."""
        if not isinstance(obj, dict):
            raise ValueError("snapshot must be an object")
        try:
            kind = str(obj["agent_kind"]).strip()
            instance = int(obj["instance"])
            status = str(obj["status"])
            progress = tuple(
                ProgressEntry(ts=float(p["ts"]), message=str(p["message"])) for p in obj.get("progress") or []
            )
            transcript = tuple(
                TranscriptMessage(id=int(m["id"]), role=str(m["role"]), content=str(m["content"]), ts=float(m["ts"]))
                for m in obj.get("transcript") or []
            )
            created_at = float(obj.get("created_at", time.time()))
        except (KeyError, TypeError) as e:
            raise ValueError(f"invalid snapshot: {e}") from e
        if not kind or instance < 1:
            raise ValueError("invalid snapshot: agent_kind/instance")
        run_id = obj.get("run_id")
        last_error = obj.get("last_error")
        return cls(
            agent_kind=kind,
            instance=instance,
            status=status,
            run_id=str(run_id) if run_id else None,
            progress=progress,
            last_error=str(last_error) if last_error else None,
            transcript=transcript,
            created_at=created_at,
        )


@dataclass(frozen=True)
class JournalLoadResult:
    snapshots: list[StatusSnapshot]
    error: str | None = None
    was_reset: bool = False


def conversation_id(agent_kind: str, instance: int) -> str:
    return f"{agent_kind}-{int(instance)}"


def parse_conversation_id(value: str) -> tuple[str, int]:
    kind, sep, number = (value or "").rpartition("-")
    if not sep or not kind or not number.isdigit() or int(number) < 1:
        raise ValueError(f"Invalid conversation id: {value!r}")
    return kind, int(number)


def bound_progress(entries: Iterable[ProgressEntry], cap: int = DEFAULT_PROGRESS_CAP) -> tuple[ProgressEntry, ...]:
    items = tuple(entries)
    if cap <= 0:
        return ()
    return items[-cap:]


def open_instance(snapshots: Iterable[StatusSnapshot], agent_kind: str, run_id: str | None) -> int:
    """Instance number for (kind, run): the one already tracking the run, else the next free one."""
    same_kind = [s for s in snapshots if s.agent_kind == agent_kind]
    if run_id:
        for s in same_kind:
            if s.run_id == run_id:
                return s.instance
    return max((s.instance for s in same_kind), default=0) + 1


def _sorted(snapshots: Iterable[StatusSnapshot]) -> list[StatusSnapshot]:
    return sorted(snapshots, key=lambda s: (s.agent_kind, s.instance))


def save_snapshots(store: SQLiteStore, project_id: str, snapshots: Iterable[StatusSnapshot]) -> None:
    entries: dict[str, str] = {}
    for s in snapshots:
        entries[s.conversation_id] = json.dumps(s.to_dict(), ensure_ascii=False)
    store.replace_journal(project_id=project_id, entries=entries)


def load_local(store: SQLiteStore, project_id: str) -> JournalLoadResult:
    rows = store.get_journal(project_id=project_id)
    snapshots: list[StatusSnapshot] = []
    skipped: list[str] = []
    for cid, payload_json in rows:
        try:
            snap = StatusSnapshot.from_dict(json.loads(payload_json))
            if snap.conversation_id != cid:
                raise ValueError("conversation id mismatch")
        except ValueError as e:
            _logger.warning("skipping invalid journal entry %s/%s: %s", project_id, cid, e)
            skipped.append(cid)
            continue
        snapshots.append(snap)

    if rows and not snapshots:
        store.clear_journal(project_id=project_id)
        return JournalLoadResult(snapshots=[], error="Stored status journal was unreadable and has been reset.", was_reset=True)
    error = f"Skipped {len(skipped)} invalid entries: {', '.join(skipped)}" if skipped else None
    return JournalLoadResult(snapshots=_sorted(snapshots), error=error)


def load_remote(store: SQLiteStore, project_id: str) -> list[StatusSnapshot]:
    """Snapshots rebuilt from the durable conversation transcript."""
    grouped: dict[str, dict[str, Any]] = {}
    for r in store.list_conversation_messages(project_id=project_id):
        cid = str(r["conversation_id"])
        g = grouped.setdefault(
            cid,
            {"agent_kind": str(r["agent_kind"]), "instance": int(r["instance"]), "run_id": None, "messages": []},
        )
        if r["run_id"]:
            g["run_id"] = str(r["run_id"])
        g["messages"].append(
            TranscriptMessage(id=int(r["message_id"]), role=str(r["role"]), content=str(r["content"]), ts=float(r["created_at"]))
        )
    out: list[StatusSnapshot] = []
    for g in grouped.values():
        messages: list[TranscriptMessage] = g["messages"]
        out.append(
            StatusSnapshot(
                agent_kind=g["agent_kind"],
                instance=g["instance"],
                status="idle",
                run_id=g["run_id"],
                transcript=tuple(messages),
                created_at=messages[0].ts if messages else time.time(),
            )
        )
    return _sorted(out)


def merge_snapshots(local: Iterable[StatusSnapshot], remote: Iterable[StatusSnapshot]) -> list[StatusSnapshot]:
    """Merge local and remote views of the same project.

    The remote transcript wins; local status, progress and last error win. A remote
    conversation for a run already tracked locally under another instance is folded
    into that instance, so (kind, run id) and (kind, instance) stay unique.
    """
    merged: dict[tuple[str, int], StatusSnapshot] = {(s.agent_kind, s.instance): s for s in local}
    for r in remote:
        match: tuple[str, int] | None = None
        if r.run_id:
            for k, s in merged.items():
                if s.agent_kind == r.agent_kind and s.run_id == r.run_id:
                    match = k
                    break
        if match is None and (r.agent_kind, r.instance) in merged:
            same_slot = merged[(r.agent_kind, r.instance)]
            if same_slot.run_id and r.run_id and same_slot.run_id != r.run_id:
                # Slot already tracks a different run: keep both, remote moves to a fresh instance.
                r = replace(r, instance=open_instance(merged.values(), r.agent_kind, None))
            else:
                match = (r.agent_kind, r.instance)

        if match is None:
            merged[(r.agent_kind, r.instance)] = r
            continue
        target = merged[match]
        merged[match] = replace(target, transcript=r.transcript, run_id=target.run_id or r.run_id)
    return _sorted(merged.values())


def load_snapshots(store: SQLiteStore, project_id: str) -> JournalLoadResult:
    local = load_local(store, project_id)
    remote = load_remote(store, project_id)
    return JournalLoadResult(
        snapshots=merge_snapshots(local.snapshots, remote),
        error=local.error,
        was_reset=local.was_reset,
    )


def record_run(
    store: SQLiteStore,
    project_id: str,
    run: dict[str, Any],
    *,
    progress_cap: int = DEFAULT_PROGRESS_CAP,
    final_message: str | None = None,
) -> StatusSnapshot:
    """Fold a run's current state into the project's journal.

    On a terminal run with `final_message`, the message is appended once to the
    durable transcript of the run's conversation.
    """
    # Local and transcript views together, so a cleared journal never hands out a used instance.
    current = load_snapshots(store, project_id).snapshots
    kind = str(run["agent_kind"])
    run_id = str(run["run_id"])
    instance = open_instance(current, kind, run_id)
    existing = next((s for s in current if s.agent_kind == kind and s.instance == instance), None)

    progress = bound_progress(
        (ProgressEntry(ts=float(p.get("ts", 0.0)), message=str(p.get("message", ""))) for p in run.get("progress") or []),
        progress_cap,
    )
    snap = StatusSnapshot(
        agent_kind=kind,
        instance=instance,
        status=str(run["status"]),
        run_id=run_id,
        progress=progress,
        last_error=run.get("error") or None,
        transcript=existing.transcript if existing is not None else (),
        created_at=existing.created_at if existing is not None else float(run.get("created_at") or time.time()),
    )

    if final_message and str(run["status"]) in TERMINAL_RUN_STATUSES:
        cid = conversation_id(kind, instance)
        already = any(
            str(r["conversation_id"]) == cid and r["run_id"] == run_id and str(r["role"]) == "assistant"
            for r in store.list_conversation_messages(project_id=project_id)
        )
        if not already:
            store.append_conversation_message(
                project_id=project_id,
                conversation_id=cid,
                agent_kind=kind,
                instance=instance,
                run_id=run_id,
                role="assistant",
                content=final_message,
            )

    others = [s for s in current if not (s.agent_kind == kind and s.instance == instance)]
    save_snapshots(store, project_id, [*others, snap])
    return snap
