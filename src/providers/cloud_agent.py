from __future__ import annotations

import base64
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from src.config.load_config import ServiceConfig
from src.workflow.errors import ErrorCategory, ExternalServiceError, NotConfigured


_logger = logging.getLogger(__name__)

_TERMINAL_SUCCESS = {"FINISHED"}
_TERMINAL_FAILURE = {"FAILED", "ERROR"}
_TERMINAL_CANCELLED = {"CANCELLED", "CANCELED"}


@dataclass(frozen=True)
class JobStatus:
    state: str  # running|finished|failed|cancelled
    raw_status: str
    summary: str
    artifact_ref: str | None
    branch: str | None = None

    @property
    def terminal(self) -> bool:
        return self.state != "running"


@dataclass(frozen=True)
class ConversationMessage:
    role: str
    text: str


def translate_service_error(status_code: int) -> ErrorCategory:
    """Map an HTTP status from the agent service to a fixed category."""
    if status_code == 401:
        return ErrorCategory.AUTH_FAILED
    if status_code == 403:
        return ErrorCategory.ACCESS_DENIED
    if status_code == 429:
        return ErrorCategory.RATE_LIMITED
    if status_code >= 500:
        return ErrorCategory.SERVICE_UNAVAILABLE
    return ErrorCategory.REQUEST_REJECTED


def _http_json(
    method: str,
    url: str,
    *,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout_s: float,
) -> Any:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = urllib.request.Request(url, data=data, headers=headers, method=method)
    try:
        with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        body = ""
        try:
            body = e.read().decode("utf-8", errors="replace")
        except Exception:
            body = ""
        _logger.debug("agent service %s %s -> HTTP %s: %s", method, url, e.code, body[:500])
        raise ExternalServiceError(translate_service_error(int(e.code)), status_code=int(e.code)) from e
    except (urllib.error.URLError, TimeoutError, OSError) as e:
        _logger.debug("agent service %s %s network error: %s", method, url, e)
        raise ExternalServiceError(ErrorCategory.NETWORK_ERROR) from e

    try:
        return json.loads(raw)
    except Exception as e:
        _logger.debug("agent service %s %s returned non-JSON: %s", method, url, raw[:500])
        raise ExternalServiceError(ErrorCategory.INVALID_RESPONSE) from e


def _message_text(content: Any) -> str:
    """Flatten the service's message content (string, list of parts, or object)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(_message_text(part) for part in content)
    if isinstance(content, dict):
        for key in ("text", "content", "value"):
            if key in content:
                return _message_text(content[key])
    return ""


def repo_url(repo: str) -> str:
    s = (repo or "").strip()
    if s.startswith("http://") or s.startswith("https://"):
        return s
    return f"https://github.com/{s.strip('/')}"


def branch_url(repo: str, branch: str) -> str:
    s = (repo or "").strip()
    prefix = "https://github.com/"
    if s.startswith(prefix):
        s = s[len(prefix):]
    return f"https://github.com/{s.strip('/')}/tree/{branch}"


class CloudAgentClient:
    """Client for the external cloud agent service.

    Payloads are parsed into `JobStatus` here; nothing above this layer sees raw JSON.
    """

    def __init__(self, config: ServiceConfig, *, api_key: str | None = None) -> None:
        self._config = config
        self._api_key = (api_key if api_key is not None else config.api_key()).strip()

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def ensure_configured(self) -> None:
        if not self._api_key:
            raise NotConfigured(
                f"Agent service API key is not set (env {self._config.api_key_env}).",
                missing=self._config.api_key_env,
            )

    def _headers(self) -> dict[str, str]:
        self.ensure_configured()
        token = base64.b64encode(f"{self._api_key}:".encode("utf-8")).decode("ascii")
        return {
            "Authorization": f"Basic {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _url(self, *parts: str) -> str:
        quoted = "/".join(urllib.parse.quote(p, safe="") for p in parts)
        return f"{self._config.base_url}/{quoted}"

    def submit_job(self, brief: str, repo: str, ref: str, *, branch_name: str | None = None) -> str:
        """Start a job and return its external id."""
        payload: dict[str, Any] = {
            "prompt": {"text": brief},
            "source": {"repository": repo_url(repo), "ref": ref},
            "target": {"autoCreatePr": True},
        }
        if branch_name:
            payload["target"]["branchName"] = branch_name
        obj = _http_json(
            "POST",
            self._url("agents"),
            headers=self._headers(),
            payload=payload,
            timeout_s=self._config.timeout_s,
        )
        job_id = str((obj or {}).get("id") or "").strip() if isinstance(obj, dict) else ""
        if not job_id:
            _logger.debug("agent service launch response without id: %r", obj)
            raise ExternalServiceError(ErrorCategory.INVALID_RESPONSE)
        return job_id

    def get_job_status(self, job_id: str, *, repo: str = "") -> JobStatus:
        obj = _http_json(
            "GET",
            self._url("agents", job_id),
            headers=self._headers(),
            payload=None,
            timeout_s=self._config.timeout_s,
        )
        if not isinstance(obj, dict):
            raise ExternalServiceError(ErrorCategory.INVALID_RESPONSE)

        raw_status = str(obj.get("status") or "").strip().upper()
        if raw_status in _TERMINAL_SUCCESS:
            state = "finished"
        elif raw_status in _TERMINAL_FAILURE:
            state = "failed"
        elif raw_status in _TERMINAL_CANCELLED:
            state = "cancelled"
        else:
            state = "running"

        target = obj.get("target") if isinstance(obj.get("target"), dict) else {}
        pr_url = str(target.get("prUrl") or target.get("pr_url") or "").strip() or None
        branch = str(target.get("branchName") or target.get("branch_name") or "").strip() or None
        artifact_ref = pr_url
        if artifact_ref is None and branch and repo:
            artifact_ref = branch_url(repo, branch)

        return JobStatus(
            state=state,
            raw_status=raw_status or "UNKNOWN",
            summary=str(obj.get("summary") or ""),
            artifact_ref=artifact_ref,
            branch=branch,
        )

    def get_conversation(self, job_id: str) -> list[ConversationMessage]:
        obj = _http_json(
            "GET",
            self._url("agents", job_id, "conversation"),
            headers=self._headers(),
            payload=None,
            timeout_s=self._config.timeout_s,
        )
        if not isinstance(obj, dict):
            return []
        messages = obj.get("messages")
        if not isinstance(messages, list):
            conv = obj.get("conversation")
            messages = conv.get("messages") if isinstance(conv, dict) else None
        if not isinstance(messages, list):
            return []

        out: list[ConversationMessage] = []
        for m in messages:
            if not isinstance(m, dict):
                continue
            role = str(m.get("role") or m.get("type") or "").strip().lower()
            if role == "assistant_message":
                role = "assistant"
            text = _message_text(m.get("text", m.get("content")))
            out.append(ConversationMessage(role=role, text=text))
        return out

    def last_assistant_message(self, job_id: str) -> str:
        for m in reversed(self.get_conversation(job_id)):
            if m.role == "assistant" and m.text.strip():
                return m.text.strip()
        return ""
