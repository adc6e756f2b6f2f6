"""Shared builders for flow engine tests: graphs, a fake clock and a driver harness."""

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx

from leadflow.config import EngineConfig, RetryPolicy
from leadflow.graph.edge import FlowGraph
from leadflow.graph.registry import GraphRegistry
from leadflow.llm.mock import ScriptedDecisionService
from leadflow.runtime.driver import FlowDriver
from leadflow.runtime.event_bus import EventBus
from leadflow.runtime.gateways import MessagingGateway, OutboxGateway, WebhookClient
from leadflow.schemas.context import LeadExecutionContext
from leadflow.schemas.events import EnrollLead, InboundMessage, TimerFired
from leadflow.storage.backend import DurableStore
from leadflow.storage.memory import InMemoryStore

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_graph(
    campaign_id: str,
    nodes: list[dict[str, Any]],
    edges: list[tuple[str, ...]],
) -> FlowGraph:
    """
    Build a graph from node dicts and edge tuples.

    Edge tuples are ``(source, target)`` or ``(source, port, target)``.
    """
    edge_docs = []
    for edge in edges:
        if len(edge) == 2:
            edge_docs.append({"source": edge[0], "target": edge[1]})
        else:
            edge_docs.append({"source": edge[0], "port": edge[1], "target": edge[2]})
    return FlowGraph.model_validate(
        {"campaign_id": campaign_id, "nodes": nodes, "edges": edge_docs}
    )


def fast_config(max_attempts: int = 3, **overrides: Any) -> EngineConfig:
    """Engine config with no retry sleeps and nothing read from the environment."""
    values: dict[str, Any] = {
        "retry": RetryPolicy(max_attempts=max_attempts, base_delay=0.0),
        "lease_ttl_seconds": 30.0,
        "lease_wait_seconds": 1.0,
        "worker_count": 2,
        "ai_model": "test/model",
        "ai_api_key": None,
        "store_path": Path("unused"),
    }
    values.update(overrides)
    return EngineConfig(**values)


def ok_webhooks(calls: list[httpx.Request] | None = None, status: int = 200) -> WebhookClient:
    """WebhookClient answered locally; requests are appended to ``calls``."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        return httpx.Response(status)

    return WebhookClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class Harness:
    """A FlowDriver over an in-memory store, with a fake clock and an outbox."""

    def __init__(
        self,
        ai: ScriptedDecisionService | None = None,
        messaging: MessagingGateway | None = None,
        webhooks: WebhookClient | None = None,
        store: DurableStore | None = None,
        config: EngineConfig | None = None,
    ):
        self.clock = FakeClock()
        self.store = store or InMemoryStore()
        self.registry = GraphRegistry(self.store)
        self.bus = EventBus()
        self.ai = ai or ScriptedDecisionService()
        self.outbox = messaging or OutboxGateway()
        self.driver = FlowDriver(
            store=self.store,
            registry=self.registry,
            ai=self.ai,
            messaging=self.outbox,
            webhooks=webhooks or ok_webhooks(),
            config=config or fast_config(),
            event_bus=self.bus,
            clock=self.clock,
        )

    async def publish(self, graph: FlowGraph) -> FlowGraph:
        return await self.registry.publish(graph)

    async def enroll(self, lead_id: str, campaign_id: str, **kwargs: Any):
        return await self.driver.handle(
            EnrollLead(lead_id=lead_id, campaign_id=campaign_id, **kwargs)
        )

    async def reply(self, lead_id: str, text: str, intent: str | None = None):
        return await self.driver.handle(
            InboundMessage(lead_id=lead_id, text=text, intent=intent, received_at=self.clock())
        )

    async def fire(self, lead_id: str):
        """Deliver the lead's scheduled timer at the current (fake) time."""
        ctx = await self.context(lead_id)
        return await self.driver.handle(
            TimerFired(lead_id=lead_id, generation=ctx.generation, wake_at=ctx.pending_wake_at)
        )

    async def run_timers(self) -> int:
        """Jump the clock through every scheduled wake until none remain."""
        fired = 0
        while (next_at := await self.store.next_wake_at()) is not None:
            self.clock.now = max(self.clock.now, next_at)
            due = await self.store.due_wakes(self.clock.now)
            for entry in due:
                await self.driver.handle(
                    TimerFired(
                        lead_id=entry.lead_id, generation=entry.generation, wake_at=entry.wake_at
                    )
                )
                fired += 1
        return fired

    async def context(self, lead_id: str) -> LeadExecutionContext:
        ctx = await self.store.load_context(lead_id)
        assert ctx is not None, f"no context for {lead_id}"
        return ctx
