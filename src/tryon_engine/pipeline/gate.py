from __future__ import annotations

import asyncio
import logging
import random
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from ..clock import Clock, SystemClock
from ..config import GateConfig
from ..errors import CircuitOpenError, RateLimitedError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GateState:
    """
    Process-wide rate-limit bookkeeping.

    Create one instance at start-up and hand it to every orchestrator; it is
    never torn down. Timestamps are on the owning gate's clock (seconds).
    """

    consecutive_failures: int = 0
    circuit_open_until: Optional[float] = None
    last_request_at: Optional[float] = None
    backoff_jitter: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


@dataclass(slots=True)
class GateSnapshot:
    consecutive_failures: int
    circuit_open: bool
    circuit_remaining_seconds: float


class Ticket:
    """Admission granted by :class:`RequestGate`; reports how the round-trip went."""

    def __init__(self, gate: "RequestGate") -> None:
        self._gate = gate
        self.resolved = False

    def record_success(self) -> None:
        self._gate._record_success()
        self.resolved = True

    def record_rate_limited(self) -> None:
        self._gate._record_rate_limited()
        self.resolved = True


class RequestGate:
    """Admission control: progressive backoff, circuit breaker and a single-flight queue."""

    def __init__(
        self,
        config: GateConfig,
        state: GateState,
        *,
        clock: Clock | None = None,
        jitter: Callable[[], float] | None = None,
    ) -> None:
        self._config = config
        self._state = state
        self._clock = clock or SystemClock()
        self._jitter = jitter or random.random
        # asyncio.Lock wakes waiters in arrival order.
        self._flight = asyncio.Lock()

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._flight.locked()

    def backoff_delay(self, failures: int, jitter: float = 0.0) -> float:
        """Seconds that must separate requests after ``failures`` rate-limit responses."""
        base = self._config.min_request_interval_ms / 1000.0
        ceiling = self._config.max_backoff_ms / 1000.0
        return min(base * (2**failures) + jitter, ceiling)

    def breaker_duration(self, failures: int) -> float:
        base = self._config.circuit_breaker_base_ms / 1000.0
        ceiling = self._config.max_circuit_breaker_ms / 1000.0
        return min(base * (2**failures), ceiling)

    def snapshot(self) -> GateSnapshot:
        now = self._clock.monotonic()
        with self._state.lock:
            open_until = self._state.circuit_open_until
            remaining = max(0.0, open_until - now) if open_until is not None else 0.0
            return GateSnapshot(
                consecutive_failures=self._state.consecutive_failures,
                circuit_open=remaining > 0,
                circuit_remaining_seconds=remaining,
            )

    @asynccontextmanager
    async def admit(self) -> AsyncIterator[Ticket]:
        """
        Wait for any outstanding ticket, then admit or reject.

        Raises
        ------
        CircuitOpenError
            While the breaker window is open.
        RateLimitedError
            When the progressive backoff after recent rate limits has not elapsed.
        """
        if self._flight.locked():
            logger.info("⏸️  Another try-on is in flight; waiting for it to finish")
        async with self._flight:
            self._check_admission()
            yield Ticket(self)

    def _check_admission(self) -> None:
        now = self._clock.monotonic()
        with self._state.lock:
            state = self._state
            if state.circuit_open_until is not None:
                if now < state.circuit_open_until:
                    remaining = state.circuit_open_until - now
                    logger.warning("🚫 Circuit open; %.0fs remaining", remaining)
                    raise CircuitOpenError(remaining)
                state.circuit_open_until = None
                logger.info("🔓 Circuit breaker window expired")

            if state.consecutive_failures > 0 and state.last_request_at is not None:
                required = self.backoff_delay(state.consecutive_failures, state.backoff_jitter)
                elapsed = now - state.last_request_at
                if elapsed < required:
                    wait = required - elapsed
                    logger.warning(
                        "⏳ Backing off after %d rate limit(s); %.1fs left",
                        state.consecutive_failures,
                        wait,
                    )
                    raise RateLimitedError(wait)

            state.last_request_at = now

    def _record_success(self) -> None:
        with self._state.lock:
            had_failures = self._state.consecutive_failures or self._state.circuit_open_until
            self._state.consecutive_failures = 0
            self._state.circuit_open_until = None
            self._state.backoff_jitter = 0.0
        if had_failures:
            logger.info("✅ Rate limiting reset; normal operation resumed")

    def _record_rate_limited(self) -> None:
        now = self._clock.monotonic()
        with self._state.lock:
            self._state.consecutive_failures += 1
            # One draw per rate limit; every admission check reuses it.
            self._state.backoff_jitter = self._jitter()
            failures = self._state.consecutive_failures
            if failures >= self._config.circuit_breaker_threshold:
                duration = self.breaker_duration(failures)
                self._state.circuit_open_until = now + duration
                logger.warning(
                    "🚫 Circuit breaker opened for %.0fs after %d consecutive rate limits",
                    duration,
                    failures,
                )
            else:
                logger.warning("⚠️  Provider rate limit #%d recorded", failures)
