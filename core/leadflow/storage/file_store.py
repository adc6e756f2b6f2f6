"""
File-backed durable store.

Directory structure:
    {base_path}/
        leads/{lead_id}.json                  # LeadExecutionContext
        graphs/{campaign_id}/v{version}.json  # Published FlowGraph snapshots
        wakes.json                            # {lead_id: {wake_at, generation}}
        leases.json                           # {lead_id: {owner, expires_at}}

Every write goes through atomic_write (temp file + rename). Blocking I/O
runs in a worker thread. Version checks and index updates are serialized
by an asyncio.Lock, so a single process may share one FileStore across
all its workers.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from leadflow.errors import ConcurrencyConflict
from leadflow.graph.edge import FlowGraph
from leadflow.schemas.context import LeadExecutionContext, LeadStatus
from leadflow.storage.backend import DurableStore, WakeEntry, validate_key
from leadflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


class FileStore(DurableStore):
    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.leads_dir = self.base_path / "leads"
        self.graphs_dir = self.base_path / "graphs"
        self.wakes_path = self.base_path / "wakes.json"
        self.leases_path = self.base_path / "leases.json"
        self._lock = asyncio.Lock()
        self._wake_lock = asyncio.Lock()
        self._lease_lock = asyncio.Lock()

    # --- helpers ------------------------------------------------------

    def _lead_path(self, lead_id: str) -> Path:
        validate_key(lead_id)
        return self.leads_dir / f"{lead_id}.json"

    def _graph_path(self, campaign_id: str, version: int) -> Path:
        validate_key(campaign_id)
        return self.graphs_dir / campaign_id / f"v{version}.json"

    @staticmethod
    def _read_json(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    @staticmethod
    def _write_json(path: Path, data: dict[str, Any]) -> None:
        with atomic_write(path) as f:
            json.dump(data, f, indent=2, default=str)

    # --- contexts -----------------------------------------------------

    async def load_context(self, lead_id: str) -> LeadExecutionContext | None:
        path = self._lead_path(lead_id)

        def _read():
            if not path.exists():
                return None
            return LeadExecutionContext.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def save_context(
        self, ctx: LeadExecutionContext, expected_version: int | None
    ) -> LeadExecutionContext:
        path = self._lead_path(ctx.lead_id)
        async with self._lock:
            current = await self.load_context(ctx.lead_id)
            actual = current.version if current is not None else None
            if actual != expected_version:
                raise ConcurrencyConflict(ctx.lead_id, expected_version, actual)

            saved = ctx.model_copy(deep=True, update={"version": (expected_version or 0) + 1})

            def _write():
                with atomic_write(path) as f:
                    f.write(saved.model_dump_json(indent=2))

            await asyncio.to_thread(_write)
        logger.debug(f"Saved context {ctx.lead_id} v{saved.version}")
        return saved

    async def list_contexts(
        self, status: LeadStatus | None = None, campaign_id: str | None = None
    ) -> list[LeadExecutionContext]:
        def _read_all():
            if not self.leads_dir.exists():
                return []
            contexts = []
            for path in sorted(self.leads_dir.glob("*.json")):
                try:
                    contexts.append(
                        LeadExecutionContext.model_validate_json(path.read_text(encoding="utf-8"))
                    )
                except ValueError as e:
                    logger.error(f"Skipping unreadable context {path.name}: {e}")
            return contexts

        return [
            ctx
            for ctx in await asyncio.to_thread(_read_all)
            if (status is None or ctx.status == status)
            and (campaign_id is None or ctx.campaign_id == campaign_id)
        ]

    # --- graphs -------------------------------------------------------

    async def save_graph(self, graph: FlowGraph) -> None:
        path = self._graph_path(graph.campaign_id, graph.version)

        def _write():
            if path.exists():
                raise ValueError(f"Campaign '{graph.campaign_id}' v{graph.version} already exists")
            with atomic_write(path) as f:
                f.write(graph.model_dump_json(indent=2))

        async with self._lock:
            await asyncio.to_thread(_write)

    async def load_graph(self, campaign_id: str, version: int) -> FlowGraph | None:
        path = self._graph_path(campaign_id, version)

        def _read():
            if not path.exists():
                return None
            return FlowGraph.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_read)

    async def list_graph_versions(self, campaign_id: str) -> list[int]:
        validate_key(campaign_id)
        campaign_dir = self.graphs_dir / campaign_id

        def _list():
            if not campaign_dir.exists():
                return []
            versions = []
            for path in campaign_dir.glob("v*.json"):
                try:
                    versions.append(int(path.stem[1:]))
                except ValueError:
                    continue
            return sorted(versions)

        return await asyncio.to_thread(_list)

    async def delete_graph(self, campaign_id: str, version: int) -> None:
        path = self._graph_path(campaign_id, version)
        await asyncio.to_thread(path.unlink, True)

    # --- wakes --------------------------------------------------------

    async def _load_wakes(self) -> dict[str, WakeEntry]:
        raw = await asyncio.to_thread(self._read_json, self.wakes_path)
        return {
            lead_id: WakeEntry(
                wake_at=datetime.fromisoformat(entry["wake_at"]),
                lead_id=lead_id,
                generation=entry["generation"],
            )
            for lead_id, entry in raw.items()
        }

    async def _store_wakes(self, wakes: dict[str, WakeEntry]) -> None:
        data = {
            lead_id: {"wake_at": e.wake_at.isoformat(), "generation": e.generation}
            for lead_id, e in wakes.items()
        }
        await asyncio.to_thread(self._write_json, self.wakes_path, data)

    async def schedule_wake(self, lead_id: str, wake_at: datetime, generation: int) -> None:
        validate_key(lead_id)
        async with self._wake_lock:
            wakes = await self._load_wakes()
            wakes[lead_id] = WakeEntry(wake_at=wake_at, lead_id=lead_id, generation=generation)
            await self._store_wakes(wakes)

    async def cancel_wake(self, lead_id: str, generation: int | None = None) -> bool:
        async with self._wake_lock:
            wakes = await self._load_wakes()
            entry = wakes.get(lead_id)
            if entry is None or (generation is not None and entry.generation != generation):
                return False
            del wakes[lead_id]
            await self._store_wakes(wakes)
            return True

    async def due_wakes(self, now: datetime, limit: int = 100) -> list[WakeEntry]:
        wakes = await self._load_wakes()
        return sorted(e for e in wakes.values() if e.wake_at <= now)[:limit]

    async def next_wake_at(self) -> datetime | None:
        wakes = await self._load_wakes()
        return min((e.wake_at for e in wakes.values()), default=None)

    # --- leases -------------------------------------------------------

    async def acquire_lease(
        self, lead_id: str, owner: str, ttl_seconds: float, now: datetime
    ) -> bool:
        validate_key(lead_id)
        async with self._lease_lock:
            leases = await asyncio.to_thread(self._read_json, self.leases_path)
            held = leases.get(lead_id)
            if (
                held is not None
                and held["owner"] != owner
                and datetime.fromisoformat(held["expires_at"]) > now
            ):
                return False
            leases[lead_id] = {
                "owner": owner,
                "expires_at": (now + timedelta(seconds=ttl_seconds)).isoformat(),
            }
            await asyncio.to_thread(self._write_json, self.leases_path, leases)
            return True

    async def release_lease(self, lead_id: str, owner: str) -> None:
        async with self._lease_lock:
            leases = await asyncio.to_thread(self._read_json, self.leases_path)
            held = leases.get(lead_id)
            if held is not None and held["owner"] == owner:
                del leases[lead_id]
                await asyncio.to_thread(self._write_json, self.leases_path, leases)
