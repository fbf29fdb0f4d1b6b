"""
Recurring background work with a start/stop lifecycle and a busy guard.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from tokenmint.logging_config import cycle_context


TickFn = Callable[[], Awaitable[object]]


@dataclass(slots=True)
class TaskState:
    run_count: int = 0
    skipped_count: int = 0
    consecutive_errors: int = 0
    last_started: Optional[datetime] = None
    last_completed: Optional[datetime] = None
    last_error: Optional[str] = None


class RecurringTask:
    """
    Runs ``tick`` every ``interval_seconds``.

    Ticks are started on a fixed cadence. A tick that fires while the
    previous one is still running is skipped, never queued, so two cycles
    of the same queue can never overlap. Exceptions escaping a tick are
    logged and swallowed; the next tick runs as scheduled.

    ``interval_seconds`` may be changed while running and takes effect
    from the next sleep.
    """

    def __init__(
        self,
        name: str,
        tick: TickFn,
        interval_seconds: float,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._tick = tick
        self._loop_task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._busy = False
        self._running = False
        self._state = TaskState()

    # ---------------------------
    # Lifecycle
    # ---------------------------
    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop(), name=f"{self.name}-loop")
        self.logger.info("%s started (interval %.1fs)", self.name, self.interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._inflight.clear()
        self.logger.info("%s stopped", self.name)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def state(self) -> TaskState:
        return self._state

    # ---------------------------
    # Execution
    # ---------------------------
    async def _run_loop(self) -> None:
        try:
            while self._running:
                task = asyncio.create_task(self.run_once(), name=f"{self.name}-tick")
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            return

    async def run_once(self) -> bool:
        """
        Run one tick now unless one is already in progress.

        Returns False when the tick was skipped.
        """
        if self._busy:
            self._state.skipped_count += 1
            self.logger.debug("%s: previous cycle still running, skipping", self.name)
            return False

        self._busy = True
        state = self._state
        state.last_started = datetime.now(timezone.utc)
        try:
            with cycle_context(task=self.name):
                await self._tick()
            state.last_error = None
            state.consecutive_errors = 0
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            state.last_error = str(exc)
            state.consecutive_errors += 1
            self.logger.error("%s cycle failed: %s", self.name, exc, exc_info=True)
        finally:
            state.run_count += 1
            state.last_completed = datetime.now(timezone.utc)
            self._busy = False
        return True
