"""
Wake scheduler - turns due wakes into TimerFired events.

Sleeps until the earliest scheduled wake (or until told a sooner one was
added) instead of polling. A wake stays in the store until the driver
moves the lead on, so a crash between dispatch and processing only
delays it; ``recover`` re-arms wakes for contexts left waiting.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from leadflow.schemas.context import LeadStatus, utc_now
from leadflow.schemas.events import TimerFired
from leadflow.storage.backend import DurableStore, WakeEntry

logger = logging.getLogger(__name__)

Dispatch = Callable[[TimerFired], Awaitable[None]]


class WakeScheduler:
    def __init__(
        self,
        store: DurableStore,
        dispatch: Dispatch,
        clock: Callable[[], datetime] = utc_now,
        max_sleep: float = 60.0,
        batch_size: int = 100,
    ):
        self._store = store
        self._dispatch = dispatch
        self._clock = clock
        self._max_sleep = max_sleep
        self._batch_size = batch_size
        self._changed = asyncio.Event()
        self._in_flight: set[WakeEntry] = set()
        self._not_before: dict[WakeEntry, float] = {}
        self._task: asyncio.Task | None = None
        self._running = False

    def notify(self, wake_at: datetime) -> None:
        """A wake was scheduled; re-plan the sleep if it is sooner."""
        self._changed.set()

    async def recover(self) -> int:
        """Re-arm wakes for every context waiting on a timer. Returns how many."""
        count = 0
        for ctx in await self._store.list_contexts(status=LeadStatus.WAITING_TIMER):
            if ctx.pending_wake_at is None:
                continue
            await self._store.schedule_wake(ctx.lead_id, ctx.pending_wake_at, ctx.generation)
            count += 1
        if count:
            logger.info(f"Recovered {count} pending wake(s)")
        return count

    def release(self, lead_id: str, generation: int, retry_in: float = 0.0) -> None:
        """
        A dispatched wake failed to apply; let it fire again after ``retry_in`` seconds.

        The wake itself stays in the store, so this only forgets that it is queued.
        """
        now = asyncio.get_running_loop().time()
        released = [
            e for e in self._in_flight if e.lead_id == lead_id and e.generation == generation
        ]
        for entry in released:
            self._in_flight.discard(entry)
            self._not_before[entry] = now + retry_in
        self._changed.set()

    async def run_due(self) -> int:
        """Dispatch every wake that is due now. Returns how many were dispatched."""
        due = await self._store.due_wakes(self._clock(), limit=self._batch_size)
        # Forget dispatched wakes the driver has since cleared
        self._in_flight &= set(due)
        self._not_before = {e: t for e, t in self._not_before.items() if e in due}
        now = asyncio.get_running_loop().time()
        dispatched = 0
        for entry in due:
            if entry in self._in_flight or self._not_before.get(entry, now) > now:
                continue
            self._not_before.pop(entry, None)
            self._in_flight.add(entry)
            await self._dispatch(
                TimerFired(
                    lead_id=entry.lead_id, generation=entry.generation, wake_at=entry.wake_at
                )
            )
            dispatched += 1
        return dispatched

    async def _seconds_until_next(self) -> float:
        next_at = await self._store.next_wake_at()
        if next_at is None:
            return self._max_sleep
        delay = (next_at - self._clock()).total_seconds()
        return min(max(delay, 0.0), self._max_sleep)

    async def _loop(self) -> None:
        while self._running:
            self._changed.clear()
            try:
                fired = await self.run_due()
                if fired:
                    logger.debug(f"Dispatched {fired} wake(s)")
                timeout = await self._seconds_until_next()
            except Exception:
                logger.exception("Wake scheduler pass failed")
                timeout = 1.0
            if timeout <= 0 and (self._in_flight or self._not_before):
                # Everything due is queued or backing off; wait for the driver to catch up
                timeout = 0.05
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=timeout)
            except TimeoutError:
                pass

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self.recover()
        self._task = asyncio.create_task(self._loop())
        logger.info("Wake scheduler started")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Wake scheduler stopped")
