from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from src.config.load_config import AppConfig
from src.providers.cloud_agent import CloudAgentClient, JobStatus
from src.runtime.completion import CompletionHandler, RunOutcome
from src.runtime.stage_events import StageEventStream, StageListener, StageName
from src.storage import status_journal
from src.storage.sqlite_store import TERMINAL_RUN_STATUSES, SQLiteStore, run_row_to_dict
from src.utils.cancel import CancellationToken
from src.utils.markdown import extract_section
from src.utils.template import render_template
from src.workflow.errors import BudgetExhausted, ErrorCategory, ExternalServiceError, NotFound, ValidationError
from src.workflow.state_machine import StateMachine


_logger = logging.getLogger(__name__)

PLACEHOLDER_SUMMARIES = frozenset({"", "completed.", "done.", "complete.", "finished."})
TRUNCATION_MARKER = "\n\n[truncated]"


@dataclass(frozen=True)
class LaunchRequest:
    item_id: str
    agent_kind: str
    instruction: str = ""
    caller: str = ""


@dataclass(frozen=True)
class AdvanceResult:
    done: bool
    run: dict[str, Any]
    content: str | None = None
    error: str | None = None
    artifact_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "done": self.done,
            "run": self.run,
            "content": self.content,
            "error": self.error,
            "artifact_ref": self.artifact_ref,
        }


def clamp_budget(budget_ms: int | None, *, default_ms: int, min_ms: int, max_ms: int) -> int:
    if budget_ms is None or int(budget_ms) <= 0:
        return int(default_ms)
    return max(int(min_ms), min(int(max_ms), int(budget_ms)))


def cap_summary(summary: str, max_chars: int) -> str:
    if len(summary) <= max_chars:
        return summary
    return summary[:max_chars] + TRUNCATION_MARKER


def build_brief(item: Any, template: str, *, repo: str, instruction: str = "") -> str:
    body = str(item["body"] or "")
    goal = extract_section(body, "Goal")
    deliverable = extract_section(body, "Human-verifiable deliverable")
    criteria = extract_section(body, "Acceptance criteria")
    if not (goal or deliverable or criteria):
        goal = (str(item["title"]) + "\n\n" + body).strip()
    extra = instruction.strip()
    return render_template(
        template,
        {
            "display_id": item["display_id"],
            "item_id": item["item_id"],
            "title": item["title"],
            "repo": repo,
            "goal": goal or str(item["title"]),
            "deliverable": deliverable or "(not specified)",
            "criteria": criteria or "(not specified)",
            "instruction": f"## Additional instructions\n{extra}" if extra else "",
        },
    )


class RunCoordinator:
    """Submits agent jobs and tracks them across bounded invocations.

    Each call does at most `budget_ms` of work: it submits the job if the run has
    none yet (never twice), polls at the configured interval, and either hands a
    finished job to the completion handler or returns `done=False` so the caller
    can invoke `advance` again.
    """

    def __init__(
        self,
        store: SQLiteStore,
        config: AppConfig,
        client: CloudAgentClient,
        *,
        completion: CompletionHandler | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self._store = store
        self._config = config
        self._client = client
        self._completion = completion or CompletionHandler(store, config)
        self._machine = StateMachine(store, config.board)
        self._clock = clock
        self._sleep = sleep

    def clamp_budget(self, budget_ms: int | None) -> int:
        c = self._config.coordinator
        return clamp_budget(budget_ms, default_ms=c.budget_default_ms, min_ms=c.budget_min_ms, max_ms=c.budget_max_ms)

    def _stream_for(self, row: Any, listener: StageListener | None) -> StageEventStream:
        run_id = str(row["run_id"])

        def _persist(stage: str, payload: dict[str, Any]) -> int:
            return self._store.append_stage_event(run_id, stage, payload).seq

        return StageEventStream(
            run_id=run_id,
            item_id=str(row["item_id"]),
            agent_kind=str(row["agent_kind"]),
            sink=_persist,
            listener=listener,
        )

    # --- Entry points
    def launch(
        self,
        request: LaunchRequest,
        *,
        budget_ms: int | None = None,
        listener: StageListener | None = None,
        cancel: CancellationToken | None = None,
    ) -> AdvanceResult:
        deadline = self._clock() + self.clamp_budget(budget_ms) / 1000.0

        item_ref = (request.item_id or "").strip()
        if not item_ref:
            raise ValidationError("item_id is required.")
        agent = self._config.agent(request.agent_kind)
        if agent is None:
            raise ValidationError(f"Unknown agent kind: {request.agent_kind!r}")
        item = self._store.find_work_item(item_ref)
        if item is None:
            raise NotFound(f"Work item not found: {item_ref}")

        self._client.ensure_configured()

        item_id = str(item["item_id"])
        row, created = self._store.find_or_create_run(
            item_id=item_id,
            agent_kind=agent.kind,
            repo=self._resolve_repo(item),
            ref=self._config.coordinator.default_ref,
            instruction=request.instruction,
            caller=request.caller,
        )
        if created:
            _logger.info("created run %s for %s (%s)", row["run_id"], item_id, agent.kind)
        else:
            _logger.info("reusing run %s for %s (%s)", row["run_id"], item_id, agent.kind)

        return self._drive(row, deadline=deadline, listener=listener, cancel=cancel)

    def advance(
        self,
        run_id: str,
        *,
        budget_ms: int | None = None,
        listener: StageListener | None = None,
        cancel: CancellationToken | None = None,
    ) -> AdvanceResult:
        deadline = self._clock() + self.clamp_budget(budget_ms) / 1000.0
        row = self._store.get_run(run_id=run_id)
        if row is None:
            raise NotFound(f"Run not found: {run_id}")
        if str(row["status"]) in TERMINAL_RUN_STATUSES:
            return self._terminal_result(row)
        if not row["external_job_id"]:
            self._client.ensure_configured()
        return self._drive(row, deadline=deadline, listener=listener, cancel=cancel)

    # --- Internals
    def _resolve_repo(self, item: Any) -> str:
        return str(item["repo"] or "").strip() or self._config.coordinator.default_repo

    def _terminal_result(self, row: Any) -> AdvanceResult:
        run = run_row_to_dict(row)
        if run["status"] == "finished":
            return AdvanceResult(done=True, run=run, content=run["summary"], artifact_ref=run["artifact_ref"])
        return AdvanceResult(done=True, run=run, error=run["error"])

    def _drive(
        self,
        row: Any,
        *,
        deadline: float,
        listener: StageListener | None,
        cancel: CancellationToken | None,
    ) -> AdvanceResult:
        run_id = str(row["run_id"])
        stream = self._stream_for(row, listener)
        job_id = str(row["external_job_id"] or "")
        result: AdvanceResult | None = None
        if not job_id and not self._store.claim_run_for_launch(run_id):
            # Another invocation owns the submission.
            current = self._store.get_run(run_id=run_id)
            if current is None:
                raise NotFound(f"Run not found: {run_id}")
            job_id = str(current["external_job_id"] or "")
            if str(current["status"]) in TERMINAL_RUN_STATUSES:
                result = self._terminal_result(current)
            elif not job_id:
                _logger.info("run %s is being launched elsewhere; not submitting", run_id)
                result = AdvanceResult(done=False, run=run_row_to_dict(current))
        elif not job_id:
            try:
                job_id = self._submit(row, stream)
            except ExternalServiceError as e:
                result = self._fail(run_id, stream, e.category.message, category=e.category)
            except ValidationError as e:
                result = self._fail(run_id, stream, str(e))
        if result is None:
            try:
                result = self._poll(run_id, job_id, deadline=deadline, stream=stream, cancel=cancel)
            except BudgetExhausted:
                result = AdvanceResult(done=False, run=run_row_to_dict(self._store.get_run(run_id=run_id)))
        self._record_journal(result)
        return result

    def _submit(self, row: Any, stream: StageEventStream) -> str:
        run_id = str(row["run_id"])
        agent = self._config.agent(str(row["agent_kind"]))
        if agent is None:
            raise ValidationError(f"Unknown agent kind on run {run_id}: {row['agent_kind']!r}")

        stream.emit(StageName.PREPARING)
        stream.emit(StageName.FETCHING_INPUT)
        item = self._store.get_work_item(item_id=str(row["item_id"]))
        if item is None:
            raise NotFound(f"Work item not found: {row['item_id']}")
        repo = str(row["repo"] or "") or self._resolve_repo(item)
        brief = build_brief(item, agent.brief_template, repo=repo, instruction=str(row["instruction"] or ""))

        stream.emit(StageName.RESOLVING_TARGET, detail=repo or None)
        if not repo:
            raise ValidationError(f"No repository configured for {item['display_id']}.")
        ref = str(row["ref"] or "") or self._config.coordinator.default_ref

        stream.emit(StageName.LAUNCHING)
        job_id = self._client.submit_job(
            brief,
            repo,
            ref,
            branch_name=f"ticket/{item['item_id']}-{agent.kind}",
        )
        if not self._store.record_external_job_id(run_id, job_id):
            # A concurrent invocation stored its job first; follow that one.
            stored = self._store.get_run(run_id=run_id)
            _logger.warning("run %s already had a job id; ignoring %s", run_id, job_id)
            job_id = str(stored["external_job_id"]) if stored is not None else job_id
        self._store.set_run_status(run_id, "running")
        _logger.info("run %s submitted as job %s", run_id, job_id)

        if agent.start_column:
            self._machine.move_work_item(str(item["item_id"]), agent.start_column, "agent-start")
        return job_id

    def _poll(
        self,
        run_id: str,
        job_id: str,
        *,
        deadline: float,
        stream: StageEventStream,
        cancel: CancellationToken | None,
    ) -> AdvanceResult:
        interval = float(self._config.coordinator.poll_interval_s)
        row = self._store.get_run(run_id=run_id)
        progress: list[dict[str, Any]] = list(run_row_to_dict(row)["progress"]) if row is not None else []
        repo = str(row["repo"]) if row is not None else ""
        cap = int(self._config.journal.progress_max_entries)

        while True:
            try:
                status = self._client.get_job_status(job_id, repo=repo)
            except ExternalServiceError as e:
                return self._fail(run_id, stream, e.category.message, category=e.category)

            progress.append({"ts": time.time(), "message": f"Status: {status.raw_status}"})
            progress = progress[-cap:] if cap > 0 else []
            if not self._store.record_poll(run_id, external_status=status.raw_status, progress=progress):
                # Finished or failed by another invocation; its events already closed the run.
                return self._terminal_result(self._store.get_run(run_id=run_id))
            stream.emit(StageName.RUNNING, detail=status.raw_status)

            if status.state == "finished":
                return self._complete(run_id, job_id, status, stream)
            if status.state == "failed":
                return self._fail(run_id, stream, ErrorCategory.JOB_FAILED.message, category=ErrorCategory.JOB_FAILED)
            if status.state == "cancelled":
                return self._fail(run_id, stream, ErrorCategory.JOB_CANCELLED.message, category=ErrorCategory.JOB_CANCELLED)

            if cancel is not None:
                cancel.raise_if_cancelled()
            if deadline - self._clock() < interval:
                raise BudgetExhausted(run_id)
            self._sleep(interval)

    def _complete(self, run_id: str, job_id: str, status: JobStatus, stream: StageEventStream) -> AdvanceResult:
        summary = status.summary.strip()
        if summary.lower() in PLACEHOLDER_SUMMARIES:
            try:
                summary = self._client.last_assistant_message(job_id) or summary
            except ExternalServiceError as e:
                _logger.debug("conversation fetch for job %s failed: %s", job_id, e.category.value)
        summary = cap_summary(summary or "Completed.", self._config.coordinator.summary_max_chars)

        done = self._completion.complete(
            run_id,
            RunOutcome(summary=summary, artifact_ref=status.artifact_ref, raw_status=status.raw_status),
            stream,
        )
        run = done.run
        return AdvanceResult(done=True, run=run, content=run["summary"], artifact_ref=run["artifact_ref"])

    def _fail(
        self,
        run_id: str,
        stream: StageEventStream,
        message: str,
        *,
        category: ErrorCategory | None = None,
    ) -> AdvanceResult:
        if self._store.fail_run(run_id, error=message):
            _logger.info("run %s failed: %s", run_id, category.value if category is not None else message)
        if not stream.closed:
            extra = {"category": category.value} if category is not None else {}
            stream.emit(StageName.FAILED, detail=message, **extra)
        row = self._store.get_run(run_id=run_id)
        run = run_row_to_dict(row)
        return AdvanceResult(done=True, run=run, error=run["error"] or message)

    def _record_journal(self, result: AdvanceResult) -> None:
        run = result.run
        project_id = str(run.get("repo") or "")
        if not project_id:
            return
        status_journal.record_run(
            self._store,
            project_id,
            run,
            progress_cap=self._config.journal.progress_max_entries,
            final_message=(result.content or result.error) if result.done else None,
        )
