# admission_controller.py

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Set

from flow_models import FlowResult
from live_metrics import Metrics

logger = logging.getLogger("LoadRunner.controller")

FlowFactory = Callable[[int], Awaitable[FlowResult]]


class RunState:
    """
    Controller-owned shared state: in-flight counter, id allocation and the
    append-only result list. Every mutation happens under self.lock.
    """
    def __init__(self):
        self.lock = asyncio.Lock()
        self.active_count = 0
        self.next_user_id = 1
        self.launched = 0
        self.peak_active = 0
        self.results: List[FlowResult] = []

    async def admit(self, ceiling: int) -> int:
        """Checks the ceiling and claims a slot in one step. Returns the new user id."""
        async with self.lock:
            if self.active_count >= ceiling:
                raise RuntimeError(f"Admission refused: {self.active_count} flows active, ceiling is {ceiling}")
            self.active_count += 1
            user_id = self.next_user_id
            self.next_user_id += 1
            self.launched += 1
            if self.active_count > self.peak_active:
                self.peak_active = self.active_count
            return user_id

    async def complete(self, result: Optional[FlowResult]):
        """Releases a slot and records the flow's result."""
        async with self.lock:
            if self.active_count > 0:
                self.active_count -= 1
            else:
                logger.warning(f"Flow completed, but active count was already {self.active_count}.")
            if result is not None:
                self.results.append(result)

    @property
    def completed_count(self) -> int:
        return len(self.results)


class AdmissionController:
    """
    Keeps up to target_concurrency flows in flight until a wall-clock deadline,
    then stops launching and waits for every in-flight flow to finish.

    Admission is gated by a semaphore sized to the ceiling: a slot is acquired
    before each launch and released when the flow completes. A flow's failure
    never stops the loop; it is converted into a failed FlowResult.
    """
    def __init__(
        self,
        state: Optional[RunState] = None,
        metrics: Optional[Metrics] = None,
        *,
        relaunch_delay: float = 0.0,
        drain_log_interval: float = 1.0,
        progress_interval: float = 0.0,
        debug: bool = False,
    ):
        self.state = state or RunState()
        self.metrics = metrics
        self.relaunch_delay = relaunch_delay
        self.drain_log_interval = drain_log_interval
        self.progress_interval = progress_interval
        self.debug = debug
        self.running = False
        self.draining = False
        self._tasks: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_requested = False
        self._deadline = 0.0

    def get_active_user_count(self) -> int:
        return self.state.active_count

    def request_stop(self):
        """Closes admission early. In-flight flows still run to completion. Thread-safe."""
        self._stop_requested = True
        logger.info("Stop requested: closing admission, in-flight flows will drain.")
        loop, stop_event = self._loop, self._stop_event
        if loop is not None and stop_event is not None and not loop.is_closed():
            loop.call_soon_threadsafe(stop_event.set)

    def _admission_open(self) -> bool:
        if self._stop_requested or self._stop_event.is_set():
            return False
        return self._loop.time() < self._deadline

    async def run(self, duration: float, target_concurrency: int, flow_factory: FlowFactory) -> List[FlowResult]:
        """
        Runs flows for duration seconds with at most target_concurrency in flight,
        then drains. Returns every FlowResult this run produced, in completion order.
        A state left over from an earlier run is replaced before launching.
        """
        if duration <= 0:
            logger.info(f"Duration is {duration}s; nothing to launch.")
            return []
        if target_concurrency < 1:
            raise ValueError(f"target_concurrency must be >= 1, got {target_concurrency}")
        if self.running:
            raise RuntimeError("AdmissionController.run() is already in progress")

        if self.state.launched or self.state.results:
            # Each run reports only its own flows
            self.state = RunState()
        self.running = True
        self.draining = False
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._deadline = self._loop.time() + duration
        semaphore = asyncio.Semaphore(target_concurrency)
        progress_task = None
        if self.progress_interval > 0:
            progress_task = asyncio.create_task(self._report_progress())

        logger.info(f"Starting load for {duration:.1f}s with {target_concurrency} concurrent flows...")
        try:
            while self._admission_open():
                if not await self._acquire_slot(semaphore):
                    break
                if not self._admission_open():
                    semaphore.release()
                    break
                user_id = await self.state.admit(target_concurrency)
                logger.debug(f"Starting flow for User {user_id}. Active flows: {self.state.active_count}")
                task = asyncio.create_task(self._run_flow(user_id, flow_factory, semaphore))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

            self.draining = True
            logger.info(f"Admission closed after {self.state.launched} launches; draining {self.state.active_count} in-flight flows.")
            await self._drain()
        finally:
            if progress_task is not None:
                progress_task.cancel()
                await asyncio.gather(progress_task, return_exceptions=True)
            self.running = False
            self.draining = False
            self._stop_requested = False

        logger.info(
            f"Run finished: {self.state.launched} flows launched, {self.state.completed_count} results, "
            f"peak concurrency {self.state.peak_active}. Active flows: {self.state.active_count}"
        )
        return list(self.state.results)

    async def _acquire_slot(self, semaphore: asyncio.Semaphore) -> bool:
        """Waits for a free slot until the deadline or a stop request. True if a slot was taken."""
        remaining = self._deadline - self._loop.time()
        if remaining <= 0:
            return False
        acquire_task = asyncio.ensure_future(semaphore.acquire())
        stop_task = asyncio.ensure_future(self._stop_event.wait())
        done, pending = await asyncio.wait(
            {acquire_task, stop_task}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        # A cancelled acquire gives its slot back if it had already been granted
        await asyncio.gather(*pending, return_exceptions=True)
        if acquire_task in done and not acquire_task.cancelled():
            return True
        return False

    async def _run_flow(self, user_id: int, flow_factory: FlowFactory, semaphore: asyncio.Semaphore):
        user_log_prefix = f"User {user_id}"
        started_monotonic = time.monotonic()
        started_ms = time.time() * 1000.0
        result = None
        try:
            result = await flow_factory(user_id)
            if not isinstance(result, FlowResult):
                raise TypeError(f"flow returned {type(result).__name__}, expected FlowResult")
        except Exception as e:
            logger.error(f"{user_log_prefix}: Flow failed unexpectedly: {e}", exc_info=self.debug)
            elapsed_ms = (time.monotonic() - started_monotonic) * 1000.0
            result = FlowResult.failed(
                user_id,
                error=f"{type(e).__name__}: {e}",
                start_time=started_ms,
                end_time=started_ms + elapsed_ms,
            )
        finally:
            await self.state.complete(result)
            if result is not None:
                logger.info(
                    f"{user_log_prefix}: Flow finished. Success: {result.success}. "
                    f"Active flows: {self.state.active_count}"
                )
                if result.success and self.metrics is not None:
                    await self.metrics.record_flow_duration(result.total_duration / 1000.0)
            try:
                remaining = self._deadline - self._loop.time()
                if self.relaunch_delay > 0 and self._admission_open():
                    await asyncio.sleep(min(self.relaunch_delay, remaining))
            finally:
                semaphore.release()

    async def _drain(self):
        """Waits until every launched flow has finished, logging while flows are outstanding."""
        while self._tasks:
            await asyncio.wait(set(self._tasks), timeout=self.drain_log_interval)
            if self._tasks:
                logger.info(f"Waiting for {self.state.active_count} in-flight flows to finish...")

    async def _report_progress(self):
        while True:
            await asyncio.sleep(self.progress_interval)
            rps = await self.metrics.get_rps() if self.metrics is not None else 0.0
            remaining = max(self._deadline - self._loop.time(), 0.0)
            logger.info(
                f"Progress: {self.state.active_count} active, {self.state.completed_count} completed, "
                f"{self.state.launched} launched, {rps:.1f} rps, {remaining:.0f}s remaining"
            )
