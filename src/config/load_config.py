from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


TRIGGERS = ("agent-start", "agent-complete", "manual")
AGENT_KINDS = ("implementation", "qa", "review")
SYNC_ACTIONS = ("worklog", "suggestions")

_ANY_COLUMN = "*"


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_str_list(value: Any, *, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"Invalid list for {key}: {value!r}")
    return tuple(str(v).strip() for v in value if str(v).strip())


@dataclass(frozen=True)
class ColumnConfig:
    id: str
    label: str
    # trigger -> columns an item may come from
    rules: dict[str, frozenset[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class BoardConfig:
    columns: tuple[ColumnConfig, ...]
    default_column: str
    display_prefix: str

    @property
    def column_ids(self) -> tuple[str, ...]:
        return tuple(c.id for c in self.columns)

    def column(self, column_id: str) -> ColumnConfig | None:
        for c in self.columns:
            if c.id == column_id:
                return c
        return None

    def allowed_sources(self, target: str, trigger: str) -> frozenset[str]:
        """Columns from which `trigger` may move an item into `target`."""
        col = self.column(target)
        if col is None:
            return frozenset()
        return col.rules.get(trigger, frozenset())


@dataclass(frozen=True)
class AgentKindConfig:
    kind: str
    start_column: str | None
    complete_column: str
    brief_template: str
    sync_actions: tuple[str, ...]
    suggestion_column: str | None = None


@dataclass(frozen=True)
class CoordinatorConfig:
    poll_interval_s: float
    budget_default_ms: int
    budget_min_ms: int
    budget_max_ms: int
    summary_max_chars: int
    default_repo: str
    default_ref: str


@dataclass(frozen=True)
class ServiceConfig:
    base_url: str
    api_key_env: str
    timeout_s: float

    def api_key(self) -> str:
        return (os.getenv(self.api_key_env) or "").strip()


@dataclass(frozen=True)
class AllocatorConfig:
    max_attempts: int
    id_width: int


@dataclass(frozen=True)
class JournalConfig:
    progress_max_entries: int


@dataclass(frozen=True)
class SignalsConfig:
    work_started_column: str
    work_completed_column: str


@dataclass(frozen=True)
class AppConfig:
    board: BoardConfig
    agents: dict[str, AgentKindConfig]
    coordinator: CoordinatorConfig
    service: ServiceConfig
    allocator: AllocatorConfig
    journal: JournalConfig
    signals: SignalsConfig

    def agent(self, kind: str) -> AgentKindConfig | None:
        return self.agents.get(kind)


def default_config_path() -> Path:
    raw = os.getenv("TICKETFLOW_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    candidate = Path("config/default.toml").resolve()
    if candidate.exists():
        return candidate
    # Running from outside the repo root: fall back to the copy shipped next to the package.
    return (Path(__file__).resolve().parents[2] / "config" / "default.toml").resolve()


def _parse_columns(raw_columns: Any) -> tuple[ColumnConfig, ...]:
    if not isinstance(raw_columns, list) or not raw_columns:
        raise ConfigError("At least one [[columns]] entry is required.")

    ids: list[str] = []
    for i, c in enumerate(raw_columns):
        if not isinstance(c, dict):
            raise ConfigError(f"Invalid columns[{i}]: expected a table.")
        cid = _as_str(c.get("id"), key=f"columns[{i}].id").strip()
        if not cid:
            raise ConfigError(f"Invalid columns[{i}].id: empty string")
        if cid in ids:
            raise ConfigError(f"Duplicate column id: {cid!r}")
        ids.append(cid)

    known = frozenset(ids)
    out: list[ColumnConfig] = []
    for i, c in enumerate(raw_columns):
        rules_raw = c.get("rules") or {}
        if not isinstance(rules_raw, dict):
            raise ConfigError(f"Invalid columns[{i}].rules: expected a table.")
        rules: dict[str, frozenset[str]] = {}
        for trigger, sources_raw in rules_raw.items():
            if trigger not in TRIGGERS:
                raise ConfigError(f"Unknown trigger {trigger!r} in columns[{i}].rules")
            sources = _as_str_list(sources_raw, key=f"columns[{i}].rules.{trigger}")
            if _ANY_COLUMN in sources:
                rules[trigger] = known
                continue
            unknown = [s for s in sources if s not in known]
            if unknown:
                raise ConfigError(f"Unknown source columns in columns[{i}].rules.{trigger}: {unknown}")
            rules[trigger] = frozenset(sources)
        out.append(
            ColumnConfig(
                id=ids[i],
                label=_as_str(c.get("label", ids[i]), key=f"columns[{i}].label"),
                rules=rules,
            )
        )
    return tuple(out)


def _parse_agents(raw_agents: Any, *, known_columns: frozenset[str]) -> dict[str, AgentKindConfig]:
    if not isinstance(raw_agents, dict) or not raw_agents:
        raise ConfigError("At least one [agents.<kind>] table is required.")

    def _column_or_none(value: Any, *, key: str) -> str | None:
        s = str(value or "").strip()
        if not s:
            return None
        if s not in known_columns:
            raise ConfigError(f"Unknown column for {key}: {s!r}")
        return s

    out: dict[str, AgentKindConfig] = {}
    for kind, a in raw_agents.items():
        if kind not in AGENT_KINDS:
            raise ConfigError(f"Unknown agent kind: {kind!r}")
        if not isinstance(a, dict):
            raise ConfigError(f"Invalid agents.{kind}: expected a table.")
        complete_column = _column_or_none(a.get("complete_column"), key=f"agents.{kind}.complete_column")
        if complete_column is None:
            raise ConfigError(f"Missing required config key: agents.{kind}.complete_column")
        sync_actions = _as_str_list(a.get("sync_actions"), key=f"agents.{kind}.sync_actions")
        for action in sync_actions:
            if action not in SYNC_ACTIONS:
                raise ConfigError(f"Unknown sync action {action!r} for agents.{kind}")
        suggestion_column = _column_or_none(a.get("suggestion_column"), key=f"agents.{kind}.suggestion_column")
        if "suggestions" in sync_actions and suggestion_column is None:
            raise ConfigError(f"agents.{kind}.suggestion_column is required for the 'suggestions' action")
        out[kind] = AgentKindConfig(
            kind=kind,
            start_column=_column_or_none(a.get("start_column"), key=f"agents.{kind}.start_column"),
            complete_column=complete_column,
            brief_template=_as_str(a.get("brief_template"), key=f"agents.{kind}.brief_template"),
            sync_actions=sync_actions,
            suggestion_column=suggestion_column,
        )
    return out


def parse_app_config(raw: dict[str, Any]) -> AppConfig:
    """Build an AppConfig from an already-parsed TOML document."""
    board_raw = raw.get("board", {})
    coordinator = raw.get("coordinator", {})
    service = raw.get("service", {})
    allocator = raw.get("allocator", {})
    journal = raw.get("journal", {})
    signals = raw.get("signals", {})

    columns = _parse_columns(raw.get("columns"))
    known = frozenset(c.id for c in columns)

    default_column = str(board_raw.get("default_column") or columns[0].id).strip()
    if default_column not in known:
        raise ConfigError(f"Unknown column for board.default_column: {default_column!r}")

    prefix = str(board_raw.get("display_prefix") or "").strip()
    if prefix and (not prefix.isalpha() or prefix.upper() != prefix):
        raise ConfigError(f"Invalid board.display_prefix: must be uppercase letters A-Z, got {prefix!r}")

    budget_min_ms = _as_int(coordinator.get("budget_min_ms", 1000), key="coordinator.budget_min_ms")
    budget_max_ms = _as_int(coordinator.get("budget_max_ms", 55000), key="coordinator.budget_max_ms")
    budget_default_ms = _as_int(coordinator.get("budget_default_ms", 25000), key="coordinator.budget_default_ms")
    if not (0 < budget_min_ms <= budget_default_ms <= budget_max_ms):
        raise ConfigError("coordinator budgets must satisfy 0 < budget_min_ms <= budget_default_ms <= budget_max_ms")

    poll_interval_s = _as_float(coordinator.get("poll_interval_s", 4.0), key="coordinator.poll_interval_s")
    if poll_interval_s <= 0:
        raise ConfigError("coordinator.poll_interval_s must be positive")

    signal_columns = {}
    for key, fallback in (("work_started_column", "col-doing"), ("work_completed_column", "col-qa")):
        value = str(signals.get(key) or fallback).strip()
        if value not in known:
            raise ConfigError(f"Unknown column for signals.{key}: {value!r}")
        signal_columns[key] = value

    max_attempts = _as_int(allocator.get("max_attempts", 10), key="allocator.max_attempts")
    if max_attempts < 1:
        raise ConfigError("allocator.max_attempts must be >= 1")

    return AppConfig(
        board=BoardConfig(columns=columns, default_column=default_column, display_prefix=prefix),
        agents=_parse_agents(raw.get("agents"), known_columns=known),
        coordinator=CoordinatorConfig(
            poll_interval_s=poll_interval_s,
            budget_default_ms=budget_default_ms,
            budget_min_ms=budget_min_ms,
            budget_max_ms=budget_max_ms,
            summary_max_chars=_as_int(
                coordinator.get("summary_max_chars", 20000), key="coordinator.summary_max_chars"
            ),
            default_repo=str(coordinator.get("default_repo") or "").strip(),
            default_ref=str(coordinator.get("default_ref") or "main").strip(),
        ),
        service=ServiceConfig(
            base_url=_as_str(service.get("base_url"), key="service.base_url").rstrip("/"),
            api_key_env=_as_str(
                service.get("api_key_env", "TICKETFLOW_AGENT_API_KEY"), key="service.api_key_env"
            ),
            timeout_s=_as_float(service.get("timeout_s", 20.0), key="service.timeout_s"),
        ),
        allocator=AllocatorConfig(
            max_attempts=max_attempts,
            id_width=_as_int(allocator.get("id_width", 4), key="allocator.id_width"),
        ),
        journal=JournalConfig(
            progress_max_entries=_as_int(
                journal.get("progress_max_entries", 50), key="journal.progress_max_entries"
            ),
        ),
        signals=SignalsConfig(**signal_columns),
    )


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e
    return parse_app_config(raw)
