from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple, Type

from youthauth.config import Settings
from youthauth.logging import get_logger
from youthauth.service.errors import CircuitOpenError
from youthauth.storage.errors import CredentialStoreUnavailable


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure-rate circuit breaker for one external dependency.

    CLOSED records the outcome of every call in a sliding window and opens once
    at least ``minimum_calls`` outcomes are in the window and the failure ratio
    reaches ``failure_rate_threshold``. OPEN rejects calls with
    ``CircuitOpenError`` until ``cooldown_seconds`` pass. HALF_OPEN then admits
    up to ``half_open_max_calls`` trial calls: a success closes the circuit and a
    failure reopens it.

    Only ``failure_exceptions`` count as failures. Any other outcome, including
    a "not found" answer, means the dependency responded and counts as healthy.
    State lives behind a lock shared by every caller; the lock is never held
    across an await.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_rate_threshold: float = 0.5,
        minimum_calls: int = 5,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 30.0,
        half_open_max_calls: int = 1,
        failure_exceptions: Tuple[Type[BaseException], ...] = (
            CredentialStoreUnavailable,
            asyncio.TimeoutError,
        ),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_rate_threshold = failure_rate_threshold
        self.minimum_calls = minimum_calls
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.half_open_max_calls = half_open_max_calls
        self.failure_exceptions = failure_exceptions
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._outcomes: Deque[Tuple[float, bool]] = deque()
        self._opened_at = 0.0
        self._half_open_in_flight = 0
        self._rejected_calls = 0

    @classmethod
    def from_settings(cls, name: str, settings: Settings) -> "CircuitBreaker":
        return cls(
            name,
            failure_rate_threshold=settings.breaker_failure_rate_threshold,
            minimum_calls=settings.breaker_minimum_calls,
            window_seconds=settings.breaker_window_seconds,
            cooldown_seconds=settings.breaker_cooldown_seconds,
            half_open_max_calls=settings.breaker_half_open_max_calls,
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open(self._clock())
            return self._state

    def _maybe_half_open(self, now: float) -> None:
        if self._state == CircuitState.OPEN and now - self._opened_at >= self.cooldown_seconds:
            self._state = CircuitState.HALF_OPEN
            self._half_open_in_flight = 0
            self.logger.info("circuit_half_open", dependency=self.name)

    def _prune(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    def _open(self, now: float, **context: Any) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._half_open_in_flight = 0
        self._outcomes.clear()
        self.logger.warning("circuit_opened", dependency=self.name, **context)

    def _admit(self) -> CircuitState:
        with self._lock:
            now = self._clock()
            self._maybe_half_open(now)
            if self._state == CircuitState.OPEN:
                self._rejected_calls += 1
                raise CircuitOpenError(
                    self.name, retry_after=max(0.0, self._opened_at + self.cooldown_seconds - now)
                )
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.half_open_max_calls:
                    self._rejected_calls += 1
                    raise CircuitOpenError(self.name)
                self._half_open_in_flight += 1
            return self._state

    def _record(self, admitted: CircuitState, ok: bool) -> None:
        with self._lock:
            now = self._clock()
            if admitted != self._state:
                # Outcome of a call admitted under a state that has since changed
                if admitted == CircuitState.HALF_OPEN and self._half_open_in_flight:
                    self._half_open_in_flight -= 1
                return
            if self._state == CircuitState.HALF_OPEN:
                if ok:
                    self._state = CircuitState.CLOSED
                    self._outcomes.clear()
                    self._half_open_in_flight = 0
                    self.logger.info("circuit_closed", dependency=self.name)
                else:
                    self._open(now, reason="half_open_trial_failed")
                return
            self._outcomes.append((now, ok))
            self._prune(now)
            if ok:
                return
            calls = len(self._outcomes)
            failures = sum(1 for _, success in self._outcomes if not success)
            if calls >= self.minimum_calls and failures / calls >= self.failure_rate_threshold:
                self._open(now, failures=failures, calls=calls)

    def _release(self, admitted: CircuitState) -> None:
        with self._lock:
            if admitted == CircuitState.HALF_OPEN and self._half_open_in_flight:
                self._half_open_in_flight -= 1

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Run ``func`` under the breaker; raises CircuitOpenError while open."""
        admitted = self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.failure_exceptions:
            self._record(admitted, ok=False)
            raise
        except Exception:
            self._record(admitted, ok=True)
            raise
        except BaseException:
            # Cancelled or interrupted: no outcome to record, but the trial slot is handed back
            self._release(admitted)
            raise
        self._record(admitted, ok=True)
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._outcomes.clear()
            self._half_open_in_flight = 0

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            self._maybe_half_open(now)
            self._prune(now)
            failures = sum(1 for _, ok in self._outcomes if not ok)
            retry_after: Optional[float] = None
            if self._state == CircuitState.OPEN:
                retry_after = max(0.0, self._opened_at + self.cooldown_seconds - now)
            return {
                "name": self.name,
                "state": self._state.value,
                "calls_in_window": len(self._outcomes),
                "failures_in_window": failures,
                "rejected_calls": self._rejected_calls,
                "retry_after_seconds": retry_after,
            }
