from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from src.config.load_config import AppConfig
from src.storage.sqlite_store import SQLiteStore
from src.workflow.errors import ValidationError
from src.workflow.state_machine import MoveResult, StateMachine


_logger = logging.getLogger(__name__)


class SignalType(str, Enum):
    WORK_STARTED = "WORK_STARTED"
    WORK_COMPLETED = "WORK_COMPLETED"


@dataclass(frozen=True)
class BoardSignal:
    type: SignalType
    item_id: str


def parse_signal(payload: Any) -> BoardSignal:
    """Validate an inbound signal; anything other than the two known types is rejected."""
    if not isinstance(payload, dict):
        raise ValidationError("signal must be an object.")
    raw_type = str(payload.get("type") or "").strip()
    try:
        kind = SignalType(raw_type)
    except ValueError as e:
        raise ValidationError(f"Unknown signal type: {raw_type!r}") from e
    item_id = str(payload.get("item_id") or payload.get("itemId") or "").strip()
    if not item_id:
        raise ValidationError("signal item_id is required.")
    return BoardSignal(type=kind, item_id=item_id)


SignalHandler = Callable[[BoardSignal], Any]


class SignalBus:
    """Synchronous in-process delivery of board signals to subscribed handlers."""

    def __init__(self) -> None:
        self._handlers: list[SignalHandler] = []

    def subscribe(self, handler: SignalHandler) -> None:
        self._handlers.append(handler)

    def publish(self, signal: BoardSignal) -> list[Any]:
        return [handler(signal) for handler in self._handlers]


class BoardSignalHandler:
    """Turns board signals into guarded column moves.

    WORK_COMPLETED targets the completion column of the agent kind that last ran on
    the item, falling back to the configured column when the item has no runs.
    """

    def __init__(self, store: SQLiteStore, config: AppConfig) -> None:
        self._store = store
        self._config = config
        self._machine = StateMachine(store, config.board)

    def __call__(self, signal: BoardSignal) -> MoveResult:
        row = self._store.find_work_item(signal.item_id)
        item_id = str(row["item_id"]) if row is not None else signal.item_id

        if signal.type == SignalType.WORK_STARTED:
            return self._machine.move_work_item(item_id, self._config.signals.work_started_column, "agent-start")

        target = self._config.signals.work_completed_column
        run = self._store.latest_run_for_item(item_id=item_id)
        if run is not None:
            agent = self._config.agent(str(run["agent_kind"]))
            if agent is not None:
                target = agent.complete_column
        _logger.debug("signal %s for %s -> %s", signal.type.value, item_id, target)
        return self._machine.move_work_item(item_id, target, "agent-complete")


def board_bus(store: SQLiteStore, config: AppConfig) -> SignalBus:
    bus = SignalBus()
    bus.subscribe(BoardSignalHandler(store, config))
    return bus
