"""Refresh scheduling: periodic and on-demand enumeration, one at a time."""

import asyncio
import time
from collections.abc import Callable
from enum import Enum

import structlog

from stale_hunter.enumerator import AppEnumerator, EnumerationResult
from stale_hunter.errors import EnumerationError, SchedulerStopped
from stale_hunter.store import Snapshot, TrackingStore

log = structlog.get_logger()

RefreshListener = Callable[[Snapshot, EnumerationResult], None]


class SchedulerState(Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"
    STOPPED = "stopped"


class RefreshScheduler:
    """Drives refresh cycles on the running event loop.

    At most one cycle is in flight. A refresh() that arrives during a cycle
    awaits that same cycle and gets its snapshot. A refresh() that starts a
    new cycle also restarts the timer countdown.

    Enumeration runs in a worker thread; the snapshot swap happens on the
    event loop.
    """

    def __init__(
        self,
        enumerator: AppEnumerator,
        store: TrackingStore,
        interval: float = 5.0,
        clock: Callable[[], float] = time.time,
        on_refresh: RefreshListener | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            enumerator: Source of running applications
            store: Store receiving each enumeration
            interval: Seconds between timer-driven refreshes
            clock: Wall clock used as "now" for scoring
            on_refresh: Called with each new snapshot and the raw result
        """
        self._enumerator = enumerator
        self._store = store
        self.interval = interval
        self._clock = clock
        self._on_refresh = on_refresh

        self._inflight: asyncio.Task[Snapshot] | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self._countdown_reset = asyncio.Event()
        self._stopped = False

        self.refresh_count = 0
        self.last_refresh_at: float | None = None

    @property
    def state(self) -> SchedulerState:
        if self._stopped:
            return SchedulerState.STOPPED
        if self._inflight is not None and not self._inflight.done():
            return SchedulerState.REFRESHING
        return SchedulerState.IDLE

    def start(self) -> None:
        """Start the timer. The first refresh runs immediately."""
        if self._stopped:
            raise SchedulerStopped("Scheduler has been stopped")
        if self._timer_task is None:
            self._timer_task = asyncio.create_task(self._run_timer())
            log.debug("scheduler_started", interval=self.interval)

    async def refresh(self) -> Snapshot:
        """Refresh now, or join the cycle already in flight.

        Raises:
            SchedulerStopped: If stop() was called (before or during the cycle)
            EnumerationError: If the OS process list could not be read
        """
        if self._stopped:
            raise SchedulerStopped("Scheduler has been stopped")

        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._cycle())
            self._countdown_reset.set()

        try:
            return await asyncio.shield(self._inflight)
        except asyncio.CancelledError:
            if self._stopped:
                raise SchedulerStopped("Scheduler stopped during refresh") from None
            raise

    async def stop(self) -> None:
        """Cancel the timer and any in-flight cycle."""
        if self._stopped:
            return
        self._stopped = True

        tasks = [t for t in (self._timer_task, self._inflight) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._timer_task = None
        self._inflight = None
        log.debug("scheduler_stopped", refreshes=self.refresh_count)

    async def _cycle(self) -> Snapshot:
        """Enumerate in a worker thread, then swap the snapshot in."""
        started = time.monotonic()
        result = await asyncio.to_thread(self._enumerator.enumerate)
        snapshot = self._store.apply_refresh(result, now=self._clock())

        self.refresh_count += 1
        self.last_refresh_at = snapshot.taken_at
        log.debug(
            "refresh_completed",
            generation=snapshot.generation,
            apps=len(snapshot),
            partial=result.partial,
            elapsed_ms=round((time.monotonic() - started) * 1000, 1),
        )

        if self._on_refresh is not None:
            self._on_refresh(snapshot, result)
        return snapshot

    async def _run_timer(self) -> None:
        """Refresh every interval; a manual refresh restarts the countdown."""
        await self._timed_refresh()
        while not self._stopped:
            self._countdown_reset.clear()
            try:
                await asyncio.wait_for(self._countdown_reset.wait(), timeout=self.interval)
                continue  # Manual refresh started a cycle
            except asyncio.TimeoutError:
                pass
            await self._timed_refresh()

    async def _timed_refresh(self) -> None:
        try:
            await self.refresh()
        except SchedulerStopped:
            return
        except EnumerationError as e:
            log.error("enumeration_failed", error=str(e))
        except Exception as e:
            log.exception("refresh_failed", error=str(e))
