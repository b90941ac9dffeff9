from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Fixed, human-readable failure categories surfaced to callers."""

    AUTH_FAILED = "auth_failed"
    ACCESS_DENIED = "access_denied"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    REQUEST_REJECTED = "request_rejected"
    INVALID_RESPONSE = "invalid_response"
    NETWORK_ERROR = "network_error"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"

    @property
    def message(self) -> str:
        return _CATEGORY_MESSAGES[self]


_CATEGORY_MESSAGES = {
    ErrorCategory.AUTH_FAILED: "Agent service authentication failed. Check that the API key is valid.",
    ErrorCategory.ACCESS_DENIED: "Agent service access denied. Your plan may not include this feature.",
    ErrorCategory.RATE_LIMITED: "Agent service rate limit exceeded. Please try again in a moment.",
    ErrorCategory.SERVICE_UNAVAILABLE: "Agent service is unavailable. Please try again later.",
    ErrorCategory.REQUEST_REJECTED: "Agent service rejected the request.",
    ErrorCategory.INVALID_RESPONSE: "Invalid response from the agent service.",
    ErrorCategory.NETWORK_ERROR: "Could not reach the agent service.",
    ErrorCategory.JOB_FAILED: "The agent job failed.",
    ErrorCategory.JOB_CANCELLED: "The agent job was cancelled.",
}


class WorkflowError(RuntimeError):
    pass


class ValidationError(WorkflowError):
    """Bad input; raised before any external call is attempted."""


class NotFound(ValidationError):
    pass


class NotConfigured(WorkflowError):
    """A required credential or setting is missing; raised before any state is created."""

    def __init__(self, message: str, *, missing: str | None = None) -> None:
        super().__init__(message)
        self.missing = missing


class TransientCollision(WorkflowError):
    """A candidate id was already taken; the allocator advances and retries."""

    def __init__(self, candidate_id: str) -> None:
        super().__init__(f"Id already taken: {candidate_id}")
        self.candidate_id = candidate_id


class AllocationExhausted(WorkflowError):
    def __init__(self, last_attempted_id: str, attempts: int) -> None:
        super().__init__(f"Could not allocate an id after {attempts} attempts (last tried {last_attempted_id}).")
        self.last_attempted_id = last_attempted_id
        self.attempts = attempts


class ExternalServiceError(WorkflowError):
    """Agent service failure mapped to a fixed category. Never retried automatically."""

    def __init__(self, category: ErrorCategory, *, status_code: int | None = None) -> None:
        super().__init__(category.message)
        self.category = category
        self.status_code = status_code


class BudgetExhausted(WorkflowError):
    """The invocation ran out of budget while the job is still pending. Not a failure."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} is still in progress.")
        self.run_id = run_id


class StaleTransition(WorkflowError):
    """A move whose source column no longer matches. Logged and absorbed as a no-op."""

    def __init__(self, item_id: str, *, current: str | None, target: str, trigger: str) -> None:
        super().__init__(f"Ignored {trigger} move of {item_id} from {current!r} to {target!r}")
        self.item_id = item_id
        self.current = current
        self.target = target
        self.trigger = trigger
