"""In-process store for tests, simulation and single-process deployments."""

import asyncio
import heapq
import logging
from datetime import datetime, timedelta

from leadflow.errors import ConcurrencyConflict
from leadflow.graph.edge import FlowGraph
from leadflow.schemas.context import LeadExecutionContext, LeadStatus
from leadflow.storage.backend import DurableStore, WakeEntry

logger = logging.getLogger(__name__)


class InMemoryStore(DurableStore):
    """
    DurableStore held in dictionaries.

    Contexts are copied on the way in and out so callers never share
    mutable state with the store. Wakes live in a heap with lazy deletion.
    """

    def __init__(self) -> None:
        self._contexts: dict[str, LeadExecutionContext] = {}
        self._graphs: dict[tuple[str, int], FlowGraph] = {}
        self._wakes: dict[str, WakeEntry] = {}
        self._wake_heap: list[WakeEntry] = []
        self._leases: dict[str, tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    # --- contexts -----------------------------------------------------

    async def load_context(self, lead_id: str) -> LeadExecutionContext | None:
        ctx = self._contexts.get(lead_id)
        return ctx.model_copy(deep=True) if ctx is not None else None

    async def save_context(
        self, ctx: LeadExecutionContext, expected_version: int | None
    ) -> LeadExecutionContext:
        async with self._lock:
            current = self._contexts.get(ctx.lead_id)
            actual = current.version if current is not None else None
            if actual != expected_version:
                raise ConcurrencyConflict(ctx.lead_id, expected_version, actual)
            saved = ctx.model_copy(
                deep=True, update={"version": (expected_version or 0) + 1}
            )
            self._contexts[ctx.lead_id] = saved
        return saved.model_copy(deep=True)

    async def list_contexts(
        self, status: LeadStatus | None = None, campaign_id: str | None = None
    ) -> list[LeadExecutionContext]:
        return [
            ctx.model_copy(deep=True)
            for ctx in self._contexts.values()
            if (status is None or ctx.status == status)
            and (campaign_id is None or ctx.campaign_id == campaign_id)
        ]

    # --- graphs -------------------------------------------------------

    async def save_graph(self, graph: FlowGraph) -> None:
        key = (graph.campaign_id, graph.version)
        if key in self._graphs:
            raise ValueError(f"Campaign '{graph.campaign_id}' v{graph.version} already exists")
        self._graphs[key] = graph

    async def load_graph(self, campaign_id: str, version: int) -> FlowGraph | None:
        return self._graphs.get((campaign_id, version))

    async def list_graph_versions(self, campaign_id: str) -> list[int]:
        return sorted(v for (c, v) in self._graphs if c == campaign_id)

    async def delete_graph(self, campaign_id: str, version: int) -> None:
        self._graphs.pop((campaign_id, version), None)

    # --- wakes --------------------------------------------------------

    async def schedule_wake(self, lead_id: str, wake_at: datetime, generation: int) -> None:
        entry = WakeEntry(wake_at=wake_at, lead_id=lead_id, generation=generation)
        self._wakes[lead_id] = entry
        heapq.heappush(self._wake_heap, entry)

    async def cancel_wake(self, lead_id: str, generation: int | None = None) -> bool:
        entry = self._wakes.get(lead_id)
        if entry is None or (generation is not None and entry.generation != generation):
            return False
        del self._wakes[lead_id]
        return True

    def _is_live(self, entry: WakeEntry) -> bool:
        return self._wakes.get(entry.lead_id) == entry

    def _prune_heap(self) -> None:
        while self._wake_heap and not self._is_live(self._wake_heap[0]):
            heapq.heappop(self._wake_heap)

    async def due_wakes(self, now: datetime, limit: int = 100) -> list[WakeEntry]:
        self._prune_heap()
        due: list[WakeEntry] = []
        while self._wake_heap and self._wake_heap[0].wake_at <= now and len(due) < limit:
            entry = heapq.heappop(self._wake_heap)
            if self._is_live(entry) and entry not in due:
                due.append(entry)
        # Due wakes stay scheduled until the driver cancels them
        for entry in due:
            heapq.heappush(self._wake_heap, entry)
        return due

    async def next_wake_at(self) -> datetime | None:
        self._prune_heap()
        return self._wake_heap[0].wake_at if self._wake_heap else None

    # --- leases -------------------------------------------------------

    async def acquire_lease(
        self, lead_id: str, owner: str, ttl_seconds: float, now: datetime
    ) -> bool:
        held = self._leases.get(lead_id)
        if held is not None and held[0] != owner and held[1] > now:
            return False
        self._leases[lead_id] = (owner, now + timedelta(seconds=ttl_seconds))
        return True

    async def release_lease(self, lead_id: str, owner: str) -> None:
        held = self._leases.get(lead_id)
        if held is not None and held[0] == owner:
            del self._leases[lead_id]
