"""
Graph registry: publish, version and load campaign graphs.

Publishing assigns the next version and stores an immutable snapshot.
Leads stay pinned to the version they enrolled on, so old versions remain
loadable until no context references them.
"""

import asyncio
import logging

from leadflow.errors import GraphValidationError
from leadflow.graph.edge import FlowGraph
from leadflow.graph.validator import ensure_valid
from leadflow.storage.backend import DurableStore

logger = logging.getLogger(__name__)


class GraphRegistry:
    """Versioned graph snapshots backed by a DurableStore, cached in process."""

    def __init__(self, store: DurableStore):
        self._store = store
        self._cache: dict[tuple[str, int], FlowGraph] = {}
        self._publish_lock = asyncio.Lock()

    async def publish(self, graph: FlowGraph) -> FlowGraph:
        """Validate and store ``graph`` as the campaign's next version."""
        ensure_valid(graph)
        async with self._publish_lock:
            version = await self._store.latest_graph_version(graph.campaign_id) + 1
            published = graph.stamped(version)
            await self._store.save_graph(published)
        self._cache[(published.campaign_id, version)] = published
        logger.info(f"✓ Published campaign '{graph.campaign_id}' v{version}")
        return published

    async def load(self, campaign_id: str, version: int | None = None) -> FlowGraph:
        """Load a specific version, or the latest when ``version`` is None."""
        if version is None:
            version = await self._store.latest_graph_version(campaign_id)
            if version == 0:
                raise GraphValidationError(
                    [f"Campaign '{campaign_id}' has no published graph"], campaign_id=campaign_id
                )

        cached = self._cache.get((campaign_id, version))
        if cached is not None:
            return cached

        graph = await self._store.load_graph(campaign_id, version)
        if graph is None:
            raise GraphValidationError(
                [f"Campaign '{campaign_id}' has no version {version}"], campaign_id=campaign_id
            )
        # Stored documents may predate a validation rule; re-check before running leads on them
        ensure_valid(graph)
        self._cache[(campaign_id, version)] = graph
        return graph

    async def latest_version(self, campaign_id: str) -> int:
        return await self._store.latest_graph_version(campaign_id)

    async def prune(self, campaign_id: str) -> list[int]:
        """Delete versions no lead references, always keeping the latest."""
        versions = await self._store.list_graph_versions(campaign_id)
        if not versions:
            return []
        latest = max(versions)
        in_use = await self._store.referenced_graph_versions(campaign_id)
        removed = []
        for version in versions:
            if version == latest or version in in_use:
                continue
            await self._store.delete_graph(campaign_id, version)
            self._cache.pop((campaign_id, version), None)
            removed.append(version)
        if removed:
            logger.info(f"Pruned campaign '{campaign_id}' versions {removed}")
        return removed
