"""Retry policy and duplicate-delivery window."""
from __future__ import annotations

import random
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Set

from .errors import ErrorClass, classify


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff with equal jitter, capped per attempt."""

    max_attempts: int = 5
    backoff_base: float = 0.2
    backoff_cap: float = 10.0

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        """Only transient failures retry, and only while attempts remain."""
        return classify(exc) is ErrorClass.TRANSIENT and attempt < self.max_attempts

    def ceiling(self, attempt: int) -> float:
        """Upper bound of the delay after failed attempt ``attempt`` (1-based)."""
        return min(self.backoff_cap, self.backoff_base * (2 ** max(attempt - 1, 0)))

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        ceiling = self.ceiling(attempt)
        half = ceiling / 2
        return half + (rng or random).uniform(0, half)


class DedupWindow:
    """Remembers handled envelope ids for ``window`` seconds.

    Ids currently being processed are tracked separately so a redelivery
    racing the first delivery is recognised as a duplicate too.
    """

    def __init__(self, window: float, clock: Callable[[], float]) -> None:
        self._window = window
        self._clock = clock
        self._seen: "OrderedDict[str, float]" = OrderedDict()
        self._in_flight: Set[str] = set()

    def claim(self, envelope_id: str) -> bool:
        """Return ``True`` if the caller should process ``envelope_id``."""
        self._purge()
        if envelope_id in self._seen or envelope_id in self._in_flight:
            return False
        self._in_flight.add(envelope_id)
        return True

    def release(self, envelope_id: str) -> None:
        """Give up a claim so a retry of the same id can be processed."""
        self._in_flight.discard(envelope_id)

    def complete(self, envelope_id: str) -> None:
        self._in_flight.discard(envelope_id)
        self._seen[envelope_id] = self._clock() + self._window
        self._seen.move_to_end(envelope_id)

    def __contains__(self, envelope_id: str) -> bool:
        self._purge()
        return envelope_id in self._seen

    def __len__(self) -> int:
        self._purge()
        return len(self._seen)

    def _purge(self) -> None:
        now = self._clock()
        while self._seen:
            _, expires = next(iter(self._seen.items()))
            if expires > now:
                break
            self._seen.popitem(last=False)
