# live_metrics.py
"""
Counters sampled while a load test is in progress.

Flows report each HTTP response, each call that got no response, and the
duration of each successful flow. The control API reads them as a
MetricsSnapshot. The final report does not use these counters; it is computed
from the FlowResults once the run has drained.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Deque, Optional

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger("LoadRunner.metrics")


class MetricsSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    rps: float = 0.0
    total_requests: int = 0
    network_errors: int = 0
    successful_flows: int = 0
    average_flow_duration_ms: float = 0.0


class Metrics:
    """
    Response rate over a sliding window plus running totals for one run.
    Mutations and locked reads go through self.lock; peek() is for readers
    that run after the owning event loop has stopped.
    """
    # Polls closer together than this reuse the last computed rate
    RPS_CACHE_SECONDS = 0.1

    def __init__(self, window_seconds: float = 1.0):
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")
        self.lock = asyncio.Lock()
        self.window_seconds = window_seconds
        self._response_times: Deque[float] = deque()
        self._rps_computed_at: Optional[float] = None
        self._rps = 0.0

        self.total_requests = 0
        self.network_errors = 0
        self.flow_count = 0
        self.flow_duration_ms_total = 0.0

    def _responses_in_window(self, now: float) -> int:
        cutoff = now - self.window_seconds
        while self._response_times and self._response_times[0] < cutoff:
            self._response_times.popleft()
        return len(self._response_times)

    @property
    def average_flow_duration_ms(self) -> float:
        if not self.flow_count:
            return 0.0
        return self.flow_duration_ms_total / self.flow_count

    async def record_response(self):
        """A call finished with an HTTP response, whatever its status."""
        now = time.monotonic()
        async with self.lock:
            self._response_times.append(now)
            self.total_requests += 1
            self._responses_in_window(now)

    async def record_network_error(self):
        async with self.lock:
            self.network_errors += 1

    async def record_flow_duration(self, duration_seconds: float):
        """Adds one successful flow to the running average."""
        if duration_seconds < 0:
            logger.warning(f"Ignoring negative flow duration {duration_seconds:.3f}s.")
            return
        async with self.lock:
            self.flow_duration_ms_total += duration_seconds * 1000.0
            self.flow_count += 1

    async def get_rps(self) -> float:
        now = time.monotonic()
        if self._rps_computed_at is not None and now - self._rps_computed_at < self.RPS_CACHE_SECONDS:
            return self._rps
        async with self.lock:
            self._rps = self._responses_in_window(now) / self.window_seconds
            self._rps_computed_at = now
            return self._rps

    async def get_average_flow_duration_ms(self) -> float:
        async with self.lock:
            return self.average_flow_duration_ms

    async def snapshot(self) -> MetricsSnapshot:
        rps = await self.get_rps()
        async with self.lock:
            return self._snapshot(rps)

    def peek(self) -> MetricsSnapshot:
        """Unlocked snapshot for use once the run's loop is no longer running."""
        return self._snapshot(self._responses_in_window(time.monotonic()) / self.window_seconds)

    def _snapshot(self, rps: float) -> MetricsSnapshot:
        return MetricsSnapshot(
            rps=rps,
            total_requests=self.total_requests,
            network_errors=self.network_errors,
            successful_flows=self.flow_count,
            average_flow_duration_ms=self.average_flow_duration_ms,
        )
