"""
Durable store interface.

Everything the engine needs to survive a restart lives behind this
interface: lead contexts (with optimistic versioning), published graph
snapshots, the wake schedule and per-lead leases.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from leadflow.graph.edge import FlowGraph
from leadflow.schemas.context import LeadExecutionContext, LeadStatus


@dataclass(frozen=True, order=True)
class WakeEntry:
    """A scheduled TimerFired for one lead. At most one exists per lead."""

    wake_at: datetime
    lead_id: str
    generation: int


def validate_key(key: str) -> None:
    """
    Validate a lead or campaign id used as a storage key.

    Raises:
        ValueError: If key is empty or could escape the storage directory
    """
    if not key or key.strip() == "":
        raise ValueError("Key cannot be empty")

    if "/" in key or "\\" in key:
        raise ValueError(f"Invalid key format: path separators not allowed in '{key}'")

    if ".." in key or key.startswith("."):
        raise ValueError(f"Invalid key format: path traversal detected in '{key}'")

    if len(key) > 1 and key[1] == ":":
        raise ValueError(f"Invalid key format: absolute paths not allowed in '{key}'")

    if "\x00" in key:
        raise ValueError("Invalid key format: null bytes not allowed")


class DurableStore(ABC):
    """Persistence for contexts, graphs, wakes and leases."""

    # --- contexts -----------------------------------------------------

    @abstractmethod
    async def load_context(self, lead_id: str) -> LeadExecutionContext | None:
        """Return a private copy of the lead's context, or None."""

    @abstractmethod
    async def save_context(
        self, ctx: LeadExecutionContext, expected_version: int | None
    ) -> LeadExecutionContext:
        """
        Persist ``ctx`` if the stored version still equals ``expected_version``
        (None means the context must not exist yet).

        Returns:
            The saved context, carrying its new version

        Raises:
            ConcurrencyConflict: If the stored version moved on
        """

    @abstractmethod
    async def list_contexts(
        self, status: LeadStatus | None = None, campaign_id: str | None = None
    ) -> list[LeadExecutionContext]:
        """All contexts, optionally filtered."""

    async def referenced_graph_versions(self, campaign_id: str) -> set[int]:
        """Graph versions still pinned by a lead that is not closed."""
        return {
            ctx.graph_version
            for ctx in await self.list_contexts(campaign_id=campaign_id)
            if ctx.status != LeadStatus.CLOSED
        }

    # --- graphs -------------------------------------------------------

    @abstractmethod
    async def save_graph(self, graph: FlowGraph) -> None:
        """Store a published snapshot. Raises ValueError if the version already exists."""

    @abstractmethod
    async def load_graph(self, campaign_id: str, version: int) -> FlowGraph | None: ...

    @abstractmethod
    async def list_graph_versions(self, campaign_id: str) -> list[int]: ...

    @abstractmethod
    async def delete_graph(self, campaign_id: str, version: int) -> None: ...

    async def latest_graph_version(self, campaign_id: str) -> int:
        """Highest published version, 0 when none exists."""
        return max(await self.list_graph_versions(campaign_id), default=0)

    # --- wakes --------------------------------------------------------

    @abstractmethod
    async def schedule_wake(self, lead_id: str, wake_at: datetime, generation: int) -> None:
        """Schedule (or replace) the lead's wake."""

    @abstractmethod
    async def cancel_wake(self, lead_id: str, generation: int | None = None) -> bool:
        """Remove the lead's wake, only if it belongs to ``generation`` when given."""

    @abstractmethod
    async def due_wakes(self, now: datetime, limit: int = 100) -> list[WakeEntry]:
        """Wakes at or before ``now``, earliest first. They stay scheduled until cancelled."""

    @abstractmethod
    async def next_wake_at(self) -> datetime | None: ...

    # --- leases -------------------------------------------------------

    @abstractmethod
    async def acquire_lease(
        self, lead_id: str, owner: str, ttl_seconds: float, now: datetime
    ) -> bool:
        """Take or renew the lead's lease. False if another owner holds an unexpired one."""

    @abstractmethod
    async def release_lease(self, lead_id: str, owner: str) -> None: ...
