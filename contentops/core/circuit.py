"""Per-capability circuit breaker."""
from __future__ import annotations

import logging
from collections import deque
from enum import Enum, auto
from typing import Callable, Deque

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = auto()
    OPEN = auto()
    HALF_OPEN = auto()


class CircuitBreaker:
    """Opens after ``threshold`` consecutive failures inside ``window`` seconds.

    While open every call is refused. After ``cooldown`` seconds one probe is
    let through; its success closes the circuit, its failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        *,
        threshold: int = 10,
        window: float = 60.0,
        cooldown: float = 30.0,
        clock: Callable[[], float],
    ) -> None:
        self.name = name
        self._threshold = threshold
        self._window = window
        self._cooldown = cooldown
        self._clock = clock
        self._failures: Deque[float] = deque()
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._probing = False

    @property
    def state(self) -> CircuitState:
        return self._state

    def is_open(self) -> bool:
        """True while calls would be refused, without consuming a probe."""
        if self._state is CircuitState.CLOSED:
            return False
        if self._state is CircuitState.HALF_OPEN:
            return self._probing
        return self._clock() - self._opened_at < self._cooldown

    def allow(self) -> bool:
        """Admit a call; moves an expired open circuit to half-open for one probe."""
        if self._state is CircuitState.CLOSED:
            return True
        if self._state is CircuitState.OPEN:
            if self._clock() - self._opened_at < self._cooldown:
                return False
            self._state = CircuitState.HALF_OPEN
            self._probing = False
        if self._probing:
            return False
        self._probing = True
        return True

    def record_success(self) -> None:
        self._failures.clear()
        if self._state is not CircuitState.CLOSED:
            logger.info("Circuit %s closed", self.name)
        self._state = CircuitState.CLOSED
        self._probing = False

    def record_failure(self) -> None:
        now = self._clock()
        if self._state is CircuitState.HALF_OPEN:
            self._trip(now)
            return
        self._failures.append(now)
        while self._failures and now - self._failures[0] > self._window:
            self._failures.popleft()
        if self._state is CircuitState.CLOSED and len(self._failures) >= self._threshold:
            self._trip(now)

    def _trip(self, now: float) -> None:
        logger.warning("Circuit %s opened", self.name)
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._probing = False
        self._failures.clear()
