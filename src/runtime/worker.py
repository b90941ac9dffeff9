from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from src.config.load_config import AppConfig, load_app_config
from src.providers.cloud_agent import CloudAgentClient
from src.runtime.coordinator import RunCoordinator
from src.storage.sqlite_store import SQLiteStore, default_db_path
from src.utils.cancel import CancelledError, CancellationToken
from src.workflow.errors import WorkflowError


_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerConfig:
    idle_interval_s: float = 2.0
    slice_budget_ms: int = 10000


class RunWorker:
    """Background thread that keeps in-flight runs moving without a caller.

    Each pass advances every run that has an external job with a bounded budget;
    `stop()` cancels the token so an in-progress poll returns at its next check.
    """

    def __init__(
        self,
        *,
        db_path: str | None = None,
        config: WorkerConfig | None = None,
        app_config: AppConfig | None = None,
        client_factory: Callable[[AppConfig], CloudAgentClient] | None = None,
    ) -> None:
        self._db_path = db_path or default_db_path()
        self._config = config or WorkerConfig()
        self._app_config = app_config or load_app_config()
        self._client_factory = client_factory or (lambda cfg: CloudAgentClient(cfg.service))
        self._thread: threading.Thread | None = None
        self._cancel = CancellationToken()
        self._passes = 0
        self._last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "idle_interval_s": float(self._config.idle_interval_s),
            "slice_budget_ms": int(self._config.slice_budget_ms),
            "db_path": self._db_path,
            "passes": self._passes,
            "last_error": self._last_error,
        }

    def start(self) -> None:
        if self.running:
            return
        self._cancel = CancellationToken()
        self._thread = threading.Thread(target=self._run_loop, name="ticketflow-run-worker", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._cancel.request_cancel()
        t = self._thread
        if t is None:
            return
        t.join(timeout=timeout_s)

    def _run_loop(self) -> None:
        store = SQLiteStore(self._db_path)
        client = self._client_factory(self._app_config)
        coordinator = RunCoordinator(store, self._app_config, client, sleep=self._cancel.wait)
        try:
            while not self._cancel.cancelled:
                if not client.configured:
                    self._last_error = "agent service not configured"
                    self._cancel.wait(self._config.idle_interval_s)
                    continue
                try:
                    self.run_once(store, coordinator)
                except CancelledError:
                    break
                except Exception as e:
                    # e.g. "database is locked" while listing runs; retry on the next pass.
                    self._last_error = f"{type(e).__name__}: {e}"
                    _logger.exception("worker pass failed")
                self._passes += 1
                self._cancel.wait(self._config.idle_interval_s)
        finally:
            store.close()

    def run_once(self, store: SQLiteStore, coordinator: RunCoordinator) -> int:
        """Advance each in-flight run once. Returns how many runs reached a terminal state."""
        finished = 0
        for row in store.list_inflight_runs():
            self._cancel.raise_if_cancelled()
            run_id = str(row["run_id"])
            try:
                result = coordinator.advance(run_id, budget_ms=self._config.slice_budget_ms, cancel=self._cancel)
            except CancelledError:
                raise
            except WorkflowError as e:
                self._last_error = str(e)
                _logger.warning("worker could not advance run %s: %s", run_id, e)
                continue
            except Exception as e:
                self._last_error = f"{type(e).__name__}: {e}"
                _logger.exception("worker failed advancing run %s", run_id)
                continue
            if result.done:
                finished += 1
        return finished
