from __future__ import annotations

import asyncio
import logging

from ..clock import Clock, SystemClock
from ..config import PollingConfig
from ..errors import ProviderError
from ..types import JobHandle, JobStatus
from .submitter import TryOnProvider, apply_payload

logger = logging.getLogger(__name__)


class JobPoller:
    """
    Drives a submitted job to a terminal state within a wall-clock budget.

    Status checks run every ``poll_interval_ms``. A failed check backs off
    ``min(interval * 2**(n-1), max_poll_backoff_ms)`` and polling continues;
    only the deadline ends the loop early, yielding ``JobStatus.TIMED_OUT``.
    No sleep extends past the deadline.
    """

    def __init__(
        self,
        provider: TryOnProvider,
        config: PollingConfig,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._provider = provider
        self._config = config
        self._clock = clock or SystemClock()

    def failure_backoff(self, failures: int) -> float:
        """Seconds to wait after ``failures`` consecutive failed status checks."""
        delay_ms = min(
            self._config.poll_interval_ms * (2 ** max(0, failures - 1)),
            self._config.max_poll_backoff_ms,
        )
        return delay_ms / 1000.0

    async def poll(self, handle: JobHandle, budget_ms: int | None = None) -> JobHandle:
        if handle.status.is_terminal:
            return handle
        if handle.id is None:
            raise ValueError("Cannot poll a job without an id")

        budget = budget_ms if budget_ms is not None else self._config.max_poll_budget_ms
        interval = self._config.poll_interval_ms / 1000.0
        deadline = self._clock.monotonic() + budget / 1000.0
        failures = 0
        logger.info("⏳ Polling job %s (budget %.1fs)", handle.id, budget / 1000.0)

        while True:
            remaining = deadline - self._clock.monotonic()
            if remaining <= 0:
                handle.status = JobStatus.TIMED_OUT
                handle.error = f"Try-on did not finish within {budget / 1000.0:.0f}s"
                logger.warning("⌛ Job %s timed out after %d poll(s)", handle.id, handle.poll_count)
                return handle

            handle.poll_count += 1
            try:
                payload = await asyncio.wait_for(self._provider.status(handle.id), timeout=remaining)
            except (ProviderError, asyncio.TimeoutError) as exc:
                failures += 1
                delay = self.failure_backoff(failures)
                logger.warning(
                    "⚠️  Status check %d failed (%dx in a row): %s; retrying in %.1fs",
                    handle.poll_count,
                    failures,
                    str(exc) or "timed out",
                    delay,
                )
            else:
                failures = 0
                previous = handle.status
                apply_payload(handle, payload)
                if handle.status is not previous:
                    logger.info("🔄 Job %s: %s -> %s", handle.id, previous.value, handle.status.value)
                if handle.status.is_terminal:
                    if handle.status is JobStatus.FAILED:
                        logger.warning("❌ Job %s failed: %s", handle.id, handle.error)
                    else:
                        logger.info("✅ Job %s completed with %d output(s)", handle.id, len(handle.outputs))
                    return handle
                delay = interval

            remaining = deadline - self._clock.monotonic()
            if remaining > 0:
                await self._clock.sleep(min(delay, remaining))
