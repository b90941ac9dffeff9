from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable


SCHEMA_VERSION = 2

TERMINAL_RUN_STATUSES = ("finished", "failed")
RUN_STATUSES = ("created", "launching", "running", "finished", "failed")


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def default_db_path() -> str:
    return os.getenv("TICKETFLOW_SQLITE_PATH", "data/ticketflow.db")


def is_unique_violation(exc: BaseException) -> bool:
    """True for sqlite uniqueness-class failures (UNIQUE / PRIMARY KEY constraint)."""
    if not isinstance(exc, sqlite3.IntegrityError):
        return False
    msg = str(exc).lower()
    return "unique constraint" in msg or "primary key" in msg


@dataclass(frozen=True)
class WorkItemRecord:
    item_id: str
    item_number: int
    display_id: str
    title: str
    column_id: str
    position: int
    created_at: float


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    item_id: str
    agent_kind: str
    created_at: float
    status: str


@dataclass(frozen=True)
class StageEventRecord:
    event_id: str
    run_id: str
    seq: int
    created_at: float
    stage: str


class SQLiteStore:
    """SQLite-backed store for work items, runs and their stage events.

    Design goals:
    - Every work item column change goes through `move_work_item_guarded` (compare-and-swap).
    - Run rows are mutated by keyed single-row updates; terminal rows are never rewritten.
    - The external job id is write-once.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Streaming responses may resume a generator on another worker thread; access stays sequential.
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @property
    def total_changes(self) -> int:
        return int(self._conn.total_changes)

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` enforces single-writer semantics across concurrent requests.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS work_items (
              item_id TEXT PRIMARY KEY,
              item_number INTEGER NOT NULL UNIQUE,
              display_id TEXT NOT NULL,
              title TEXT NOT NULL,
              body TEXT NOT NULL,
              repo TEXT NOT NULL,
              column_id TEXT NOT NULL,
              position INTEGER NOT NULL,
              moved_at REAL,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              run_id TEXT PRIMARY KEY,
              item_id TEXT NOT NULL,
              agent_kind TEXT NOT NULL,
              status TEXT NOT NULL,
              external_job_id TEXT,
              external_status TEXT,
              summary TEXT,
              artifact_ref TEXT,
              error TEXT,
              repo TEXT NOT NULL,
              ref TEXT NOT NULL,
              instruction TEXT NOT NULL,
              caller TEXT NOT NULL,
              progress_json TEXT NOT NULL,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              finished_at REAL,
              FOREIGN KEY (item_id) REFERENCES work_items(item_id)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS run_events (
              event_id TEXT PRIMARY KEY,
              run_id TEXT NOT NULL,
              seq INTEGER NOT NULL,
              created_at REAL NOT NULL,
              stage TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              UNIQUE (run_id, seq),
              FOREIGN KEY (run_id) REFERENCES runs(run_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS artifacts (
              artifact_id TEXT PRIMARY KEY,
              item_id TEXT NOT NULL,
              agent_kind TEXT NOT NULL,
              title TEXT NOT NULL,
              body TEXT NOT NULL,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              UNIQUE (item_id, agent_kind, title),
              FOREIGN KEY (item_id) REFERENCES work_items(item_id)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS status_journal (
              project_id TEXT NOT NULL,
              conversation_id TEXT NOT NULL,
              payload_json TEXT NOT NULL,
              updated_at REAL NOT NULL,
              PRIMARY KEY (project_id, conversation_id)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS conversation_messages (
              project_id TEXT NOT NULL,
              conversation_id TEXT NOT NULL,
              message_id INTEGER NOT NULL,
              agent_kind TEXT NOT NULL,
              instance INTEGER NOT NULL,
              run_id TEXT,
              role TEXT NOT NULL,
              content TEXT NOT NULL,
              created_at REAL NOT NULL,
              PRIMARY KEY (project_id, conversation_id, message_id)
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_items_column ON work_items(column_id, position);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_item_kind ON runs(item_id, agent_kind, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_status_created ON runs(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_run_events_run_seq ON run_events(run_id, seq);")

        # New databases start at schema_version=1 (base tables), then migrate up to SCHEMA_VERSION.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except Exception:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN;")
        try:
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Duplicate-creation guard for tickets created from review suggestions.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS suggestion_links (
              source_item_id TEXT NOT NULL,
              suggestion_hash TEXT NOT NULL,
              created_item_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              PRIMARY KEY (source_item_id, suggestion_hash)
            );
            """
        )

    # --- Work items
    def list_item_ids(self) -> list[str]:
        rows = self._conn.execute("SELECT item_id FROM work_items ORDER BY item_number;").fetchall()
        return [str(r["item_id"]) for r in rows]

    def insert_work_item(
        self,
        *,
        item_id: str,
        item_number: int,
        display_id: str,
        title: str,
        body: str,
        repo: str,
        column_id: str,
    ) -> WorkItemRecord:
        """Insert a new item at the end of `column_id`.

        Raises sqlite3.IntegrityError when the id/number is already taken.
        """
        ts = _utc_ts()
        with self.transaction():
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM work_items WHERE column_id = ?;",
                (column_id,),
            ).fetchone()
            position = int(row["n"]) if row is not None else 0
            self._conn.execute(
                """
                INSERT INTO work_items(
                  item_id, item_number, display_id, title, body, repo, column_id, position,
                  moved_at, created_at, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (item_id, int(item_number), display_id, title, body, repo, column_id, position, ts, ts, ts),
            )
        return WorkItemRecord(
            item_id=item_id,
            item_number=int(item_number),
            display_id=display_id,
            title=title,
            column_id=column_id,
            position=position,
            created_at=ts,
        )

    def get_work_item(self, *, item_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT
              item_id, item_number, display_id, title, body, repo, column_id, position,
              moved_at, created_at, updated_at
            FROM work_items
            WHERE item_id = ?
            LIMIT 1;
            """,
            (item_id,),
        ).fetchone()

    def find_work_item(self, ref: str) -> sqlite3.Row | None:
        """Look up an item by id ("0010"), bare number ("10") or display id ("HAL-0010")."""
        s = (ref or "").strip()
        if not s:
            return None
        row = self.get_work_item(item_id=s)
        if row is not None:
            return row
        row = self._conn.execute(
            "SELECT item_id FROM work_items WHERE display_id = ? LIMIT 1;",
            (s,),
        ).fetchone()
        if row is not None:
            return self.get_work_item(item_id=str(row["item_id"]))
        digits = s.rsplit("-", 1)[-1]
        if digits.isdigit():
            row = self._conn.execute(
                "SELECT item_id FROM work_items WHERE item_number = ? LIMIT 1;",
                (int(digits),),
            ).fetchone()
            if row is not None:
                return self.get_work_item(item_id=str(row["item_id"]))
        return None

    def list_work_items(self, *, column_id: str | None = None) -> list[dict[str, Any]]:
        where = "1=1"
        params: list[Any] = []
        if column_id:
            where = "column_id = ?"
            params.append(column_id)
        rows = self._conn.execute(
            f"""
            SELECT item_id, display_id, title, repo, column_id, position, moved_at, updated_at
            FROM work_items
            WHERE {where}
            ORDER BY column_id, position, moved_at, item_number;
            """,
            params,
        ).fetchall()
        return [
            {
                "item_id": r["item_id"],
                "display_id": r["display_id"],
                "title": r["title"],
                "repo": r["repo"],
                "column_id": r["column_id"],
                "position": int(r["position"]),
                "moved_at": float(r["moved_at"]) if r["moved_at"] is not None else None,
                "updated_at": float(r["updated_at"]),
            }
            for r in rows
        ]

    def move_work_item_guarded(self, *, item_id: str, expected_column: str, target_column: str) -> bool:
        """Compare-and-swap column update. Returns False when the stored column changed underneath us.

        Position is the target column's current item count, computed in the same statement.
        """
        ts = _utc_ts()
        cur = self._conn.execute(
            """
            UPDATE work_items
            SET
              column_id = ?,
              position = (SELECT COUNT(*) FROM work_items WHERE column_id = ?),
              moved_at = ?,
              updated_at = ?
            WHERE item_id = ? AND column_id = ?;
            """,
            (target_column, target_column, ts, ts, item_id, expected_column),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def update_work_item_body(self, *, item_id: str, body: str) -> bool:
        """Write `body` only when it differs from the stored one."""
        cur = self._conn.execute(
            "UPDATE work_items SET body = ?, updated_at = ? WHERE item_id = ? AND body != ?;",
            (body, _utc_ts(), item_id, body),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def count_items_by_column(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT column_id, COUNT(*) AS n FROM work_items GROUP BY column_id ORDER BY column_id;",
        ).fetchall()
        return {str(r["column_id"]): int(r["n"]) for r in rows}

    # --- Runs
    _RUN_COLUMNS = """
      run_id, item_id, agent_kind, status, external_job_id, external_status, summary, artifact_ref,
      error, repo, ref, instruction, caller, progress_json, created_at, updated_at, finished_at
    """

    def create_run(
        self,
        *,
        item_id: str,
        agent_kind: str,
        repo: str,
        ref: str,
        instruction: str = "",
        caller: str = "",
    ) -> RunRecord:
        with self.transaction():
            record = self._insert_run(
                item_id=item_id, agent_kind=agent_kind, repo=repo, ref=ref, instruction=instruction, caller=caller
            )
        return record

    def _insert_run(
        self,
        *,
        item_id: str,
        agent_kind: str,
        repo: str,
        ref: str,
        instruction: str,
        caller: str,
    ) -> RunRecord:
        run_id = _new_id("run")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO runs(
              run_id, item_id, agent_kind, status, repo, ref, instruction, caller,
              progress_json, created_at, updated_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (run_id, item_id, agent_kind, "created", repo, ref, instruction, caller, "[]", created_at, created_at),
        )
        return RunRecord(run_id=run_id, item_id=item_id, agent_kind=agent_kind, created_at=created_at, status="created")

    def find_or_create_run(
        self,
        *,
        item_id: str,
        agent_kind: str,
        repo: str,
        ref: str,
        instruction: str = "",
        caller: str = "",
    ) -> tuple[sqlite3.Row, bool]:
        """Return the active run for (item, kind), creating one if there is none.

        The lookup and insert share one write transaction, so concurrent launches
        for the same pair end up on the same run. Returns (row, created).
        """
        with self.transaction():
            row = self.find_active_run(item_id=item_id, agent_kind=agent_kind)
            created = row is None
            if created:
                record = self._insert_run(
                    item_id=item_id, agent_kind=agent_kind, repo=repo, ref=ref, instruction=instruction, caller=caller
                )
                row = self.get_run(run_id=record.run_id)
        return row, created

    def get_run(self, *, run_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            f"SELECT {self._RUN_COLUMNS} FROM runs WHERE run_id = ? LIMIT 1;",
            (run_id,),
        ).fetchone()

    def find_active_run(self, *, item_id: str, agent_kind: str) -> sqlite3.Row | None:
        return self._conn.execute(
            f"""
            SELECT {self._RUN_COLUMNS}
            FROM runs
            WHERE item_id = ? AND agent_kind = ? AND status NOT IN ('finished', 'failed')
            ORDER BY created_at DESC, run_id DESC
            LIMIT 1;
            """,
            (item_id, agent_kind),
        ).fetchone()

    def latest_run_for_item(self, *, item_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            f"""
            SELECT {self._RUN_COLUMNS}
            FROM runs
            WHERE item_id = ?
            ORDER BY created_at DESC, run_id DESC
            LIMIT 1;
            """,
            (item_id,),
        ).fetchone()

    def list_inflight_runs(self) -> list[sqlite3.Row]:
        return self._conn.execute(
            f"""
            SELECT {self._RUN_COLUMNS}
            FROM runs
            WHERE status IN ('launching', 'running') AND external_job_id IS NOT NULL
            ORDER BY updated_at ASC;
            """,
        ).fetchall()

    def set_run_status(self, run_id: str, status: str) -> bool:
        """Move a non-terminal run to another non-terminal status."""
        if status not in RUN_STATUSES or status in TERMINAL_RUN_STATUSES:
            raise ValueError(f"Invalid non-terminal run status: {status!r}")
        cur = self._conn.execute(
            """
            UPDATE runs SET status = ?, updated_at = ?
            WHERE run_id = ? AND status NOT IN ('finished', 'failed') AND status != ?;
            """,
            (status, _utc_ts(), run_id, status),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def claim_run_for_launch(self, run_id: str) -> bool:
        """Move a `created` run without a job id to `launching`.

        Only the caller that gets True may submit the external job.
        """
        cur = self._conn.execute(
            """
            UPDATE runs SET status = 'launching', updated_at = ?
            WHERE run_id = ? AND status = 'created' AND external_job_id IS NULL;
            """,
            (_utc_ts(), run_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def record_external_job_id(self, run_id: str, external_job_id: str) -> bool:
        """Store the external job id once. Returns False if one was already recorded."""
        cur = self._conn.execute(
            """
            UPDATE runs SET external_job_id = ?, updated_at = ?
            WHERE run_id = ? AND external_job_id IS NULL;
            """,
            (external_job_id, _utc_ts(), run_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def record_poll(self, run_id: str, *, external_status: str, progress: list[dict[str, Any]]) -> bool:
        """Store the latest poll. Returns False once the run is terminal."""
        cur = self._conn.execute(
            """
            UPDATE runs SET external_status = ?, progress_json = ?, updated_at = ?
            WHERE run_id = ? AND status NOT IN ('finished', 'failed');
            """,
            (external_status, _json_dumps(progress), _utc_ts(), run_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def finish_run(self, run_id: str, *, summary: str, artifact_ref: str | None) -> bool:
        ts = _utc_ts()
        cur = self._conn.execute(
            """
            UPDATE runs
            SET status = 'finished', summary = ?, artifact_ref = ?, updated_at = ?, finished_at = ?
            WHERE run_id = ? AND status NOT IN ('finished', 'failed');
            """,
            (summary, artifact_ref, ts, ts, run_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def fail_run(self, run_id: str, *, error: str) -> bool:
        ts = _utc_ts()
        cur = self._conn.execute(
            """
            UPDATE runs
            SET status = 'failed', error = ?, updated_at = ?, finished_at = ?
            WHERE run_id = ? AND status NOT IN ('finished', 'failed');
            """,
            (error, ts, ts, run_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def list_runs_page(
        self,
        *,
        item_id: str | None,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if item_id:
            where.append("item_id = ?")
            params.append(item_id)

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)

        if cursor is not None:
            created_at, run_id = cursor
            # Newest-first pagination (DESC).
            where.append("(created_at < ? OR (created_at = ? AND run_id < ?))")
            params.extend([float(created_at), float(created_at), str(run_id)])

        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT {self._RUN_COLUMNS}
            FROM runs
            WHERE {where_sql}
            ORDER BY created_at DESC, run_id DESC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [run_row_to_dict(r) for r in rows]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["run_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_runs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM runs GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Reconcile (startup safety)
    def reconcile_unlaunched_runs(self, *, reason: str, older_than_s: float = 60.0) -> int:
        """Fail runs that never recorded an external job id.

        A process that died between run creation and submission leaves such rows behind;
        runs with a job id are left alone because the external job keeps going.
        Returns the number of runs reconciled.
        """
        ts = _utc_ts()
        rows = self._conn.execute(
            """
            SELECT run_id FROM runs
            WHERE status IN ('created', 'launching') AND external_job_id IS NULL AND updated_at < ?;
            """,
            (ts - float(older_than_s),),
        ).fetchall()
        if not rows:
            return 0

        run_ids = [str(r["run_id"]) for r in rows]
        for run_id in run_ids:
            if self.fail_run(run_id, error=reason):
                self.append_stage_event(run_id, "failed", {"error": reason})
        return len(run_ids)

    # --- Stage events
    def append_stage_event(self, run_id: str, stage: str, payload: dict[str, Any]) -> StageEventRecord:
        event_id = _new_id("evt")
        created_at = _utc_ts()
        with self.transaction():
            row = self._conn.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 AS next_seq FROM run_events WHERE run_id = ?;",
                (run_id,),
            ).fetchone()
            seq = int(row["next_seq"])
            self._conn.execute(
                """
                INSERT INTO run_events(event_id, run_id, seq, created_at, stage, payload_json)
                VALUES(?, ?, ?, ?, ?, ?);
                """,
                (event_id, run_id, seq, created_at, stage, _json_dumps(payload)),
            )
        return StageEventRecord(event_id=event_id, run_id=run_id, seq=seq, created_at=created_at, stage=stage)

    def list_stage_events(self, run_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT event_id, seq, created_at, stage, payload_json
            FROM run_events WHERE run_id = ? ORDER BY seq;
            """,
            (run_id,),
        ).fetchall()
        return [
            {
                "event_id": r["event_id"],
                "seq": int(r["seq"]),
                "created_at": float(r["created_at"]),
                "stage": r["stage"],
                "payload": json.loads(r["payload_json"]),
            }
            for r in rows
        ]

    def list_events_page(self, *, run_id: str, limit: int, after_seq: int | None) -> dict[str, Any]:
        where = ["run_id = ?"]
        params: list[Any] = [run_id]
        if after_seq is not None:
            where.append("seq > ?")
            params.append(int(after_seq))
        where_sql = " AND ".join(where)
        fetch_n = int(limit) + 1

        rows = self._conn.execute(
            f"""
            SELECT event_id, run_id, seq, created_at, stage, payload_json
            FROM run_events
            WHERE {where_sql}
            ORDER BY seq ASC
            LIMIT ?;
            """,
            (*params, fetch_n),
        ).fetchall()

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]

        items = [
            {
                "event_id": r["event_id"],
                "run_id": r["run_id"],
                "seq": int(r["seq"]),
                "created_at": float(r["created_at"]),
                "stage": r["stage"],
                "payload": json.loads(r["payload_json"]),
            }
            for r in rows
        ]
        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["seq"]), str(last["event_id"]))
        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    # --- Artifacts
    def upsert_artifact(self, *, item_id: str, agent_kind: str, title: str, body: str) -> bool:
        """Insert or update an artifact. Returns False when the stored body is already identical."""
        ts = _utc_ts()
        with self.transaction():
            existing = self._conn.execute(
                "SELECT body FROM artifacts WHERE item_id = ? AND agent_kind = ? AND title = ? LIMIT 1;",
                (item_id, agent_kind, title),
            ).fetchone()
            if existing is not None and str(existing["body"]) == body:
                return False
            self._conn.execute(
                """
                INSERT INTO artifacts(artifact_id, item_id, agent_kind, title, body, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(item_id, agent_kind, title)
                DO UPDATE SET body = excluded.body, updated_at = excluded.updated_at;
                """,
                (_new_id("art"), item_id, agent_kind, title, body, ts, ts),
            )
        return True

    def list_artifacts(self, *, item_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT artifact_id, item_id, agent_kind, title, body, created_at, updated_at
            FROM artifacts WHERE item_id = ? ORDER BY created_at, title;
            """,
            (item_id,),
        ).fetchall()
        return [
            {
                "artifact_id": r["artifact_id"],
                "item_id": r["item_id"],
                "agent_kind": r["agent_kind"],
                "title": r["title"],
                "body": r["body"],
                "created_at": float(r["created_at"]),
                "updated_at": float(r["updated_at"]),
            }
            for r in rows
        ]

    # --- Suggestion links (duplicate-creation guard)
    def get_suggestion_link(self, *, source_item_id: str, suggestion_hash: str) -> str | None:
        row = self._conn.execute(
            """
            SELECT created_item_id FROM suggestion_links
            WHERE source_item_id = ? AND suggestion_hash = ? LIMIT 1;
            """,
            (source_item_id, suggestion_hash),
        ).fetchone()
        return str(row["created_item_id"]) if row is not None else None

    def claim_suggestion_link(self, *, source_item_id: str, suggestion_hash: str) -> bool:
        """Reserve the link before its ticket exists; False if another caller holds it.

        A claimed link has an empty `created_item_id` until `resolve_suggestion_link`.
        """
        cur = self._conn.execute(
            """
            INSERT INTO suggestion_links(source_item_id, suggestion_hash, created_item_id, created_at)
            VALUES(?, ?, '', ?)
            ON CONFLICT(source_item_id, suggestion_hash) DO NOTHING;
            """,
            (source_item_id, suggestion_hash, _utc_ts()),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def resolve_suggestion_link(self, *, source_item_id: str, suggestion_hash: str, created_item_id: str) -> bool:
        cur = self._conn.execute(
            """
            UPDATE suggestion_links SET created_item_id = ?
            WHERE source_item_id = ? AND suggestion_hash = ? AND created_item_id = '';
            """,
            (created_item_id, source_item_id, suggestion_hash),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def release_suggestion_link(self, *, source_item_id: str, suggestion_hash: str) -> None:
        self._conn.execute(
            """
            DELETE FROM suggestion_links
            WHERE source_item_id = ? AND suggestion_hash = ? AND created_item_id = '';
            """,
            (source_item_id, suggestion_hash),
        )
        self._conn.commit()

    # --- Status journal (local cache, keyed by project)
    def replace_journal(self, *, project_id: str, entries: dict[str, str]) -> None:
        ts = _utc_ts()
        with self.transaction():
            self._conn.execute("DELETE FROM status_journal WHERE project_id = ?;", (project_id,))
            for conversation_id, payload_json in entries.items():
                self._conn.execute(
                    """
                    INSERT INTO status_journal(project_id, conversation_id, payload_json, updated_at)
                    VALUES(?, ?, ?, ?);
                    """,
                    (project_id, conversation_id, payload_json, ts),
                )

    def get_journal(self, *, project_id: str) -> list[tuple[str, str]]:
        rows = self._conn.execute(
            """
            SELECT conversation_id, payload_json FROM status_journal
            WHERE project_id = ? ORDER BY conversation_id;
            """,
            (project_id,),
        ).fetchall()
        return [(str(r["conversation_id"]), str(r["payload_json"])) for r in rows]

    def clear_journal(self, *, project_id: str) -> None:
        self._conn.execute("DELETE FROM status_journal WHERE project_id = ?;", (project_id,))
        self._conn.commit()

    # --- Conversation messages (durable transcript source)
    def append_conversation_message(
        self,
        *,
        project_id: str,
        conversation_id: str,
        agent_kind: str,
        instance: int,
        run_id: str | None,
        role: str,
        content: str,
        created_at: float | None = None,
    ) -> int:
        ts = _utc_ts() if created_at is None else float(created_at)
        with self.transaction():
            row = self._conn.execute(
                """
                SELECT COALESCE(MAX(message_id), 0) + 1 AS next_id FROM conversation_messages
                WHERE project_id = ? AND conversation_id = ?;
                """,
                (project_id, conversation_id),
            ).fetchone()
            message_id = int(row["next_id"])
            self._conn.execute(
                """
                INSERT INTO conversation_messages(
                  project_id, conversation_id, message_id, agent_kind, instance, run_id, role, content, created_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (project_id, conversation_id, message_id, agent_kind, int(instance), run_id, role, content, ts),
            )
        return message_id

    def list_conversation_messages(self, *, project_id: str) -> list[sqlite3.Row]:
        return self._conn.execute(
            """
            SELECT conversation_id, message_id, agent_kind, instance, run_id, role, content, created_at
            FROM conversation_messages
            WHERE project_id = ?
            ORDER BY conversation_id, message_id;
            """,
            (project_id,),
        ).fetchall()


def run_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    try:
        progress = json.loads(str(row["progress_json"] or "[]"))
    except Exception:
        progress = []
    return {
        "run_id": row["run_id"],
        "item_id": row["item_id"],
        "agent_kind": row["agent_kind"],
        "status": row["status"],
        "external_job_id": row["external_job_id"],
        "external_status": row["external_status"],
        "summary": row["summary"],
        "artifact_ref": row["artifact_ref"],
        "error": row["error"],
        "repo": row["repo"],
        "ref": row["ref"],
        "progress": progress if isinstance(progress, list) else [],
        "created_at": float(row["created_at"]),
        "updated_at": float(row["updated_at"]),
        "finished_at": float(row["finished_at"]) if row["finished_at"] is not None else None,
    }
