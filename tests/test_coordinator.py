from __future__ import annotations

import pytest

from src.config.load_config import AppConfig
from src.providers.cloud_agent import JobStatus
from src.runtime.coordinator import LaunchRequest, RunCoordinator, build_brief, cap_summary, clamp_budget
from src.storage.sqlite_store import SQLiteStore
from src.workflow.errors import ErrorCategory, ExternalServiceError, NotConfigured, NotFound, ValidationError
from src.workflow.tickets import create_work_item


_STATES = {"FINISHED": "finished", "FAILED": "failed", "CANCELLED": "cancelled"}

BODY = """## Goal

Show the build number in the footer.

## Human-verifiable deliverable (UI-only)

Footer reads "build 42".

## Acceptance criteria (UI-only)

- [ ] Footer visible on every page
"""


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeAgentClient:
    def __init__(
        self,
        statuses: list[str],
        *,
        configured: bool = True,
        job_id: str = "X",
        summary: str = "Implemented the footer.",
        artifact_ref: str | None = "https://github.com/acme/hal/pull/7",
        conversation: str = "",
        poll_error: ExternalServiceError | None = None,
        submit_error: ExternalServiceError | None = None,
    ) -> None:
        self.statuses = list(statuses)
        self._configured = configured
        self.job_id = job_id
        self.summary = summary
        self.artifact_ref = artifact_ref
        self.conversation = conversation
        self.poll_error = poll_error
        self.submit_error = submit_error
        self.submissions: list[dict] = []
        self.polled: list[str] = []

    @property
    def configured(self) -> bool:
        return self._configured

    def ensure_configured(self) -> None:
        if not self._configured:
            raise NotConfigured("Agent service API key is not set.", missing="TICKETFLOW_AGENT_API_KEY")

    def submit_job(self, brief: str, repo: str, ref: str, *, branch_name: str | None = None) -> str:
        self.submissions.append({"brief": brief, "repo": repo, "ref": ref, "branch_name": branch_name})
        if self.submit_error is not None:
            raise self.submit_error
        return self.job_id

    def get_job_status(self, job_id: str, *, repo: str = "") -> JobStatus:
        self.polled.append(job_id)
        if self.poll_error is not None:
            raise self.poll_error
        raw = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return JobStatus(
            state=_STATES.get(raw, "running"),
            raw_status=raw,
            summary=self.summary if raw == "FINISHED" else "",
            artifact_ref=self.artifact_ref if raw == "FINISHED" else None,
        )

    def last_assistant_message(self, job_id: str) -> str:
        return self.conversation


def _setup(store: SQLiteStore, cfg: AppConfig, client: FakeAgentClient, clock: FakeClock) -> tuple[RunCoordinator, str]:
    item = create_work_item(store, cfg, title="Footer build number", body=BODY, repo="acme/hal", column_id="col-todo")
    return RunCoordinator(store, cfg, client, clock=clock, sleep=clock.sleep), item.item_id


def test_clamp_budget() -> None:
    kw = {"default_ms": 25000, "min_ms": 1000, "max_ms": 55000}
    assert clamp_budget(None, **kw) == 25000
    assert clamp_budget(0, **kw) == 25000
    assert clamp_budget(-5, **kw) == 25000
    assert clamp_budget(10, **kw) == 1000
    assert clamp_budget(10**6, **kw) == 55000
    assert clamp_budget(30000, **kw) == 30000


def test_small_budget_converges_with_single_submission(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = FakeAgentClient(["CREATING", "RUNNING", "RUNNING", "RUNNING", "RUNNING", "FINISHED"])
    coordinator, item_id = _setup(store, app_config, client, clock)

    result = coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"), budget_ms=5000)
    assert result.done is False
    assert result.run["status"] == "running"
    assert result.run["external_job_id"] == "X"
    assert store.get_work_item(item_id=item_id)["column_id"] == "col-doing"

    calls = 1
    while not result.done:
        result = coordinator.advance(result.run["run_id"], budget_ms=5000)
        calls += 1
        assert calls < 10

    assert len(client.submissions) == 1
    assert set(client.polled) == {"X"}
    assert result.run["status"] == "finished"
    assert result.content == "Implemented the footer."
    assert result.artifact_ref == "https://github.com/acme/hal/pull/7"
    assert store.get_work_item(item_id=item_id)["column_id"] == "col-qa"
    # Sleeps never exceed the poll interval.
    assert set(clock.sleeps) <= {4.0}


def test_continuation_polls_stored_job_without_resubmitting(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = FakeAgentClient(["RUNNING"])
    coordinator, item_id = _setup(store, app_config, client, clock)

    a = coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"), budget_ms=1000)
    assert a.done is False
    assert len(client.polled) == 1

    seen: list[str] = []
    b = coordinator.advance(a.run["run_id"], budget_ms=1000, listener=lambda e: seen.append(e.stage.value))
    assert b.done is False
    assert len(client.submissions) == 1
    assert client.polled == ["X", "X"]
    assert store.get_run(run_id=a.run["run_id"])["external_job_id"] == "X"
    assert seen == ["running"]


def test_launch_streams_stages_in_order(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = FakeAgentClient(["FINISHED"])
    coordinator, item_id = _setup(store, app_config, client, clock)

    seen: list[str] = []
    result = coordinator.launch(
        LaunchRequest(item_id=item_id, agent_kind="implementation", instruction="Keep it small."),
        listener=lambda e: seen.append(e.stage.value),
    )
    assert result.done is True
    assert seen == ["preparing", "fetching_input", "resolving_target", "launching", "running", "completed"]

    persisted = store.list_stage_events(result.run["run_id"])
    assert [e["stage"] for e in persisted] == seen
    assert [e["seq"] for e in persisted] == [1, 2, 3, 4, 5, 6]

    brief = client.submissions[0]["brief"]
    assert "Show the build number in the footer." in brief
    assert "- [ ] Footer visible on every page" in brief
    assert "Keep it small." in brief
    assert client.submissions[0]["repo"] == "acme/hal"
    assert client.submissions[0]["branch_name"] == f"ticket/{item_id}-implementation"


def test_relaunch_reuses_active_run(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = FakeAgentClient(["RUNNING"])
    coordinator, item_id = _setup(store, app_config, client, clock)

    first = coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"), budget_ms=1000)
    second = coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"), budget_ms=1000)
    assert first.run["run_id"] == second.run["run_id"]
    assert len(client.submissions) == 1


def test_job_failure_is_terminal_and_categorized(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = FakeAgentClient(["FAILED"])
    coordinator, item_id = _setup(store, app_config, client, clock)

    result = coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"))
    assert result.done is True
    assert result.error == ErrorCategory.JOB_FAILED.message
    assert result.run["status"] == "failed"
    # Start move happened; completion move did not.
    assert store.get_work_item(item_id=item_id)["column_id"] == "col-doing"
    assert store.list_stage_events(result.run["run_id"])[-1]["stage"] == "failed"


def test_service_error_during_poll_is_not_retried(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = FakeAgentClient(["RUNNING"], poll_error=ExternalServiceError(ErrorCategory.RATE_LIMITED, status_code=429))
    coordinator, item_id = _setup(store, app_config, client, clock)

    result = coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"), budget_ms=55000)
    assert result.done is True
    assert result.error == ErrorCategory.RATE_LIMITED.message
    assert len(client.polled) == 1


def test_submit_error_fails_run_without_moving_item(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = FakeAgentClient(["RUNNING"], submit_error=ExternalServiceError(ErrorCategory.AUTH_FAILED, status_code=401))
    coordinator, item_id = _setup(store, app_config, client, clock)

    result = coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"))
    assert result.done is True
    assert result.run["status"] == "failed"
    assert result.run["external_job_id"] is None
    assert result.error == ErrorCategory.AUTH_FAILED.message
    assert store.get_work_item(item_id=item_id)["column_id"] == "col-todo"
    assert client.polled == []


def test_missing_credentials_create_no_state(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = FakeAgentClient(["RUNNING"], configured=False)
    coordinator, item_id = _setup(store, app_config, client, clock)

    with pytest.raises(NotConfigured):
        coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"))
    assert store.count_runs_by_status() == {}
    assert client.submissions == []


def test_bad_input_rejected_before_external_calls(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = FakeAgentClient(["RUNNING"])
    coordinator, item_id = _setup(store, app_config, client, clock)

    with pytest.raises(ValidationError):
        coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="deploy"))
    with pytest.raises(ValidationError):
        coordinator.launch(LaunchRequest(item_id="  ", agent_kind="implementation"))
    with pytest.raises(NotFound):
        coordinator.launch(LaunchRequest(item_id="0999", agent_kind="implementation"))
    with pytest.raises(NotFound):
        coordinator.advance("run_missing")
    assert client.submissions == []
    assert client.polled == []


def test_advancing_terminal_run_writes_nothing(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = FakeAgentClient(["FINISHED"])
    coordinator, item_id = _setup(store, app_config, client, clock)

    done = coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"))
    before = store.total_changes
    again = coordinator.advance(done.run["run_id"])
    assert again.done is True
    assert again.content == done.content
    assert store.total_changes == before
    assert len(client.polled) == 1


def test_placeholder_summary_enriched_from_conversation(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = FakeAgentClient(["FINISHED"], summary="Done.", conversation="Added the footer and a test.")
    coordinator, item_id = _setup(store, app_config, client, clock)

    result = coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"))
    assert result.content == "Added the footer and a test."
    body = store.get_work_item(item_id=item_id)["body"]
    assert "## Latest run outcome" in body
    assert "Added the footer and a test." in body


def test_cap_summary() -> None:
    assert cap_summary("short", 10) == "short"
    capped = cap_summary("x" * 25, 20)
    assert capped == "x" * 20 + "\n\n[truncated]"


def test_build_brief_falls_back_to_title_and_body() -> None:
    item = {"item_id": "0003", "display_id": "HAL-0003", "title": "Fix login", "body": "Users cannot log in."}
    brief = build_brief(item, "Ticket {{display_id}}\n\n{{goal}}\n\n{{instruction}}", repo="acme/hal")
    assert brief == "Ticket HAL-0003\n\nFix login\n\nUsers cannot log in.\n"


def test_overlapping_calls_during_submit_do_not_submit_again(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = FakeAgentClient(["RUNNING"])
    coordinator, item_id = _setup(store, app_config, client, clock)
    submit = client.submit_job
    overlapping = []

    def submit_while_others_arrive(brief: str, repo: str, ref: str, *, branch_name: str | None = None) -> str:
        run = store.find_active_run(item_id=item_id, agent_kind="implementation")
        overlapping.append(coordinator.advance(str(run["run_id"]), budget_ms=1000))
        overlapping.append(coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"), budget_ms=1000))
        return submit(brief, repo, ref, branch_name=branch_name)

    client.submit_job = submit_while_others_arrive
    result = coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"), budget_ms=1000)

    assert len(client.submissions) == 1
    assert [r.done for r in overlapping] == [False, False]
    assert {r.run["run_id"] for r in overlapping} == {result.run["run_id"]}
    assert all(r.run["status"] == "launching" for r in overlapping)
    assert result.run["external_job_id"] == "X"
    assert result.run["status"] == "running"


class _OverlappingPollClient(FakeAgentClient):
    def __init__(self, statuses: list[str]) -> None:
        super().__init__(statuses)
        self.during_poll = None

    def get_job_status(self, job_id: str, *, repo: str = "") -> JobStatus:
        hook, self.during_poll = self.during_poll, None
        if hook is not None:
            hook()
        return super().get_job_status(job_id, repo=repo)


def test_poll_after_another_call_finished_the_run_emits_nothing(store: SQLiteStore, app_config: AppConfig) -> None:
    clock = FakeClock()
    client = _OverlappingPollClient(["RUNNING", "FINISHED"])
    coordinator, item_id = _setup(store, app_config, client, clock)
    started = coordinator.launch(LaunchRequest(item_id=item_id, agent_kind="implementation"), budget_ms=1000)
    run_id = started.run["run_id"]
    assert started.done is False

    other = []
    client.during_poll = lambda: other.append(coordinator.advance(run_id, budget_ms=1000))
    seen: list[str] = []
    late = coordinator.advance(run_id, budget_ms=1000, listener=lambda e: seen.append(e.stage.value))

    assert other[0].done is True
    assert late.done is True
    assert late.content == "Implemented the footer."
    assert seen == []
    stages = [e["stage"] for e in store.list_stage_events(run_id)]
    assert stages[-1] == "completed"
    assert stages.count("completed") == 1
