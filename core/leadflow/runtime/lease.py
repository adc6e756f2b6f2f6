"""
Per-lead mutual exclusion.

Two layers: an asyncio.Lock per lead serializes workers inside this
process, and a TTL lease in the durable store keeps other processes out.
A crashed holder's lease simply expires.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from uuid import uuid4

from leadflow.errors import LeaseUnavailableError
from leadflow.storage.backend import DurableStore

logger = logging.getLogger(__name__)


class LeaseHandle:
    """Held lease on one lead; renew it before long steps."""

    def __init__(self, leases: "LeadLeases", lead_id: str):
        self._leases = leases
        self.lead_id = lead_id

    async def renew(self) -> None:
        if not await self._leases.try_acquire(self.lead_id):
            raise LeaseUnavailableError(f"Lease on lead '{self.lead_id}' was lost")


class LeadLeases:
    def __init__(
        self,
        store: DurableStore,
        clock: Callable[[], datetime],
        ttl_seconds: float = 30.0,
        wait_seconds: float = 10.0,
        owner: str | None = None,
        poll_interval: float = 0.05,
    ):
        self._store = store
        self._clock = clock
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds
        self.owner = owner or f"worker-{uuid4().hex[:8]}"
        self.poll_interval = poll_interval
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    async def try_acquire(self, lead_id: str) -> bool:
        return await self._store.acquire_lease(lead_id, self.owner, self.ttl_seconds, self._clock())

    async def _acquire(self, lead_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds
        while not await self.try_acquire(lead_id):
            if loop.time() >= deadline:
                raise LeaseUnavailableError(
                    f"Lead '{lead_id}' is leased elsewhere (waited {self.wait_seconds}s)"
                )
            await asyncio.sleep(self.poll_interval)

    @asynccontextmanager
    async def hold(self, lead_id: str) -> AsyncIterator[LeaseHandle]:
        lock = self._locks.setdefault(lead_id, asyncio.Lock())
        self._holders[lead_id] = self._holders.get(lead_id, 0) + 1
        try:
            async with lock:
                await self._acquire(lead_id)
                try:
                    yield LeaseHandle(self, lead_id)
                finally:
                    await self._store.release_lease(lead_id, self.owner)
        finally:
            self._holders[lead_id] -= 1
            if not self._holders[lead_id]:
                del self._holders[lead_id]
                self._locks.pop(lead_id, None)
