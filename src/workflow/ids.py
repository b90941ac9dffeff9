from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable

from src.storage.sqlite_store import is_unique_violation
from src.workflow.errors import AllocationExhausted, TransientCollision


_logger = logging.getLogger(__name__)

_DIGIT_RUN_RE = re.compile(r"\d+")
_TOKEN_SPLIT_RE = re.compile(r"[^A-Za-z0-9]+")

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_ID_WIDTH = 4


def parse_item_number(item_id: str) -> int | None:
    """Numeric value of an id, taken from its last digit run ("HAL-0065" -> 65)."""
    runs = _DIGIT_RUN_RE.findall(str(item_id or ""))
    if not runs:
        return None
    return int(runs[-1])


def format_item_id(number: int, *, width: int = DEFAULT_ID_WIDTH) -> str:
    return str(int(number)).zfill(int(width))


def display_prefix(repo: str) -> str:
    """Short uppercase prefix derived from a repository coordinate.

    Uses the last 2-6 character token of the repo name that contains a letter,
    else the first four letters of the name, else "PRJ".
    """
    name = str(repo or "").strip().rstrip("/").split("/")[-1]
    tokens = [t for t in _TOKEN_SPLIT_RE.split(name) if t]
    for token in reversed(tokens):
        if 2 <= len(token) <= 6 and re.search(r"[A-Za-z]", token):
            return token.upper()
    letters = re.sub(r"[^A-Za-z]", "", name)
    if letters:
        return letters[:4].upper()
    return "PRJ"


def display_id(item_id: str, *, repo: str, prefix: str = "") -> str:
    return f"{(prefix or display_prefix(repo))}-{item_id}"


@dataclass(frozen=True)
class AllocationResult:
    number: int
    item_id: str
    attempts: int


class IdAllocator:
    """Assigns the next free sequential id, retrying on uniqueness collisions.

    The starting candidate is computed once from `existing_ids`; on a collision the
    allocator advances by one instead of re-reading, so concurrent allocators that
    started from the same snapshot end up on distinct ids.
    """

    def __init__(self, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS, width: int = DEFAULT_ID_WIDTH) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = int(max_attempts)
        self.width = int(width)

    def next_candidate(self, existing_ids: Iterable[str]) -> int:
        numbers = [n for n in (parse_item_number(x) for x in existing_ids) if n is not None]
        return (max(numbers) if numbers else 0) + 1

    def allocate(self, existing_ids: Iterable[str], insert: Callable[[int, str], None]) -> AllocationResult:
        """Call `insert(number, item_id)` with successive candidates until one succeeds.

        Uniqueness violations advance to the next candidate; any other error propagates.
        """
        start = self.next_candidate(existing_ids)
        last_id = format_item_id(start, width=self.width)
        for attempt in range(self.max_attempts):
            number = start + attempt
            last_id = format_item_id(number, width=self.width)
            try:
                insert(number, last_id)
            except Exception as e:
                if not (isinstance(e, TransientCollision) or is_unique_violation(e)):
                    raise
                _logger.debug("id %s already taken, advancing", last_id)
                continue
            return AllocationResult(number=number, item_id=last_id, attempts=attempt + 1)
        raise AllocationExhausted(last_id, self.max_attempts)
