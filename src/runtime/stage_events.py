from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable


class StageName(str, Enum):
    PREPARING = "preparing"
    FETCHING_INPUT = "fetching_input"
    RESOLVING_TARGET = "resolving_target"
    LAUNCHING = "launching"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (StageName.COMPLETED, StageName.FAILED)


_RANK = {
    StageName.PREPARING: 0,
    StageName.FETCHING_INPUT: 1,
    StageName.RESOLVING_TARGET: 2,
    StageName.LAUNCHING: 3,
    StageName.RUNNING: 4,
    StageName.COMPLETED: 5,
    StageName.FAILED: 5,
}


class StageOrderError(RuntimeError):
    pass


@dataclass(frozen=True)
class StageEvent:
    run_id: str
    item_id: str
    agent_kind: str
    stage: StageName
    seq: int
    ts: float
    detail: str | None = None
    artifact_ref: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "type": "stage",
            "run_id": self.run_id,
            "item_id": self.item_id,
            "agent_kind": self.agent_kind,
            "stage": self.stage.value,
            "seq": self.seq,
            "ts": self.ts,
            "detail": self.detail,
            "artifact_ref": self.artifact_ref,
        }
        out.update(self.extra)
        return out

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False) + "\n"


# (stage, payload) -> persisted seq
StageSink = Callable[[str, dict[str, Any]], int]
StageListener = Callable[[StageEvent], None]


class StageEventStream:
    """Ordered, append-only progress records for one run invocation.

    Stages never go backwards, `running` may repeat, and exactly one terminal
    record (`completed` or `failed`) closes the stream.
    """

    def __init__(
        self,
        *,
        run_id: str,
        item_id: str,
        agent_kind: str,
        sink: StageSink | None = None,
        listener: StageListener | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.run_id = run_id
        self.item_id = item_id
        self.agent_kind = agent_kind
        self._sink = sink
        self._listener = listener
        self._clock = clock
        self._events: list[StageEvent] = []

    @property
    def events(self) -> list[StageEvent]:
        return list(self._events)

    @property
    def last(self) -> StageEvent | None:
        return self._events[-1] if self._events else None

    @property
    def closed(self) -> bool:
        return self.last is not None and self.last.stage.terminal

    def emit(
        self,
        stage: StageName | str,
        *,
        detail: str | None = None,
        artifact_ref: str | None = None,
        **extra: Any,
    ) -> StageEvent:
        stage = StageName(stage)
        last = self.last
        if last is not None:
            if last.stage.terminal:
                raise StageOrderError(f"Run {self.run_id}: {stage.value} after terminal {last.stage.value}")
            if _RANK[stage] < _RANK[last.stage]:
                raise StageOrderError(f"Run {self.run_id}: {stage.value} after {last.stage.value}")
            if stage == last.stage and stage != StageName.RUNNING:
                raise StageOrderError(f"Run {self.run_id}: repeated {stage.value}")

        payload: dict[str, Any] = {"item_id": self.item_id, "agent_kind": self.agent_kind}
        if detail is not None:
            payload["detail"] = detail
        if artifact_ref is not None:
            payload["artifact_ref"] = artifact_ref
        payload.update(extra)

        seq = self._sink(stage.value, payload) if self._sink is not None else len(self._events) + 1
        event = StageEvent(
            run_id=self.run_id,
            item_id=self.item_id,
            agent_kind=self.agent_kind,
            stage=stage,
            seq=int(seq),
            ts=self._clock(),
            detail=detail,
            artifact_ref=artifact_ref,
            extra=dict(extra),
        )
        self._events.append(event)
        if self._listener is not None:
            self._listener(event)
        return event
