"""
Flow Runtime - top-level orchestrator for running campaigns.

Wires the store, graph registry, driver, wake scheduler and event bus
together and drains lead events with a pool of workers.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from leadflow.config import EngineConfig
from leadflow.errors import LeadFlowError, LeaseUnavailableError, TransientSideEffectError
from leadflow.graph.edge import FlowGraph
from leadflow.graph.registry import GraphRegistry
from leadflow.llm.decision import AIDecisionService
from leadflow.runtime.driver import FlowDriver, RngFactory, seeded_rng
from leadflow.runtime.event_bus import EventBus
from leadflow.runtime.gateways import MessagingGateway, WebhookClient
from leadflow.runtime.retry import retry_async
from leadflow.runtime.scheduler import WakeScheduler
from leadflow.schemas.context import LeadExecutionContext, LeadStatus, utc_now
from leadflow.schemas.events import (
    EnrollLead,
    ForceAdvance,
    InboundMessage,
    LeadEvent,
    NodeEntered,
    ReturnFromHandoff,
    TimerFired,
)
from leadflow.storage.backend import DurableStore

logger = logging.getLogger(__name__)


class FlowRuntime:
    """
    Runs campaigns for many leads concurrently.

    Responsibilities:
    - Publish and load campaign graphs
    - Queue lead events and process them on ``worker_count`` workers
    - Fire timers through the wake scheduler
    - Expose operator commands (enroll, force-advance, return-from-handoff)

    Events for different leads run in parallel; events for the same lead
    are serialized by the driver's per-lead lease.

    Example:
        runtime = FlowRuntime(store=FileStore("./store"), ai=ai, messaging=gateway)
        await runtime.publish_graph(graph)
        await runtime.start()
        await runtime.submit(EnrollLead(lead_id="lead-1", campaign_id="welcome"))
        ...
        await runtime.stop()
    """

    def __init__(
        self,
        store: DurableStore,
        ai: AIDecisionService,
        messaging: MessagingGateway,
        webhooks: WebhookClient | None = None,
        config: EngineConfig | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
        rng_factory: RngFactory = seeded_rng,
    ):
        self._config = config or EngineConfig()
        self._store = store
        self._event_bus = event_bus or EventBus()
        self._registry = GraphRegistry(store)
        self._queue: asyncio.Queue[LeadEvent] = asyncio.Queue()
        self._scheduler = WakeScheduler(
            store,
            dispatch=self.submit,
            clock=clock,
            max_sleep=self._config.max_scheduler_sleep,
        )
        self._driver = FlowDriver(
            store=store,
            registry=self._registry,
            ai=ai,
            messaging=messaging,
            webhooks=webhooks,
            config=self._config,
            event_bus=self._event_bus,
            clock=clock,
            rng_factory=rng_factory,
            on_wake_scheduled=self._scheduler.notify,
        )
        self._workers: list[asyncio.Task] = []
        self._running = False
        self._failures = 0

    # === PROPERTIES ===

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def registry(self) -> GraphRegistry:
        return self._registry

    @property
    def driver(self) -> FlowDriver:
        return self._driver

    @property
    def scheduler(self) -> WakeScheduler:
        return self._scheduler

    @property
    def is_running(self) -> bool:
        return self._running

    # === LIFECYCLE ===

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"leadflow-worker-{i}")
            for i in range(self._config.worker_count)
        ]
        await self._resume_interrupted()
        await self._scheduler.start()
        logger.info(f"Flow runtime started with {len(self._workers)} worker(s)")

    async def _resume_interrupted(self) -> None:
        """Queue leads left between hops by a crash so their chains finish."""
        interrupted = await self._store.list_contexts(status=LeadStatus.RUNNING)
        for ctx in interrupted:
            await self.submit(NodeEntered(lead_id=ctx.lead_id))
        if interrupted:
            logger.info(f"Resuming {len(interrupted)} interrupted lead(s)")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        await self._scheduler.stop()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Flow runtime stopped")

    async def join(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    # === EVENTS ===

    async def submit(self, event: LeadEvent) -> None:
        """Queue an event for asynchronous processing."""
        await self._queue.put(event)

    async def process(self, event: LeadEvent) -> LeadExecutionContext | None:
        """Apply an event right away and return the resulting context."""
        return await self._apply(event)

    async def _apply(self, event: LeadEvent) -> LeadExecutionContext | None:
        """
        Apply an event, retrying while the lead keeps changing underneath us.

        Once retries run out the lead is handed to a human rather than left
        where it was, so the event is never silently lost.
        """
        try:
            return await retry_async(
                lambda: self._driver.handle(event),
                self._config.retry,
                retry_on=(TransientSideEffectError,),
                describe=f"{event.kind} for lead {event.lead_id}",
            )
        except TransientSideEffectError as e:
            self._failures += 1
            return await self._driver.escalate(event, reason="automation failure", error=str(e))

    async def _worker(self, index: int) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._apply(event)
            except LeaseUnavailableError as e:
                logger.warning(f"{e}; requeueing {event.kind}")
                await asyncio.sleep(self._config.lease_wait_seconds / 10)
                await self._queue.put(event)
            except LeadFlowError as e:
                self._failures += 1
                logger.error(f"Worker {index} failed {event.kind} for lead {event.lead_id}: {e}")
                self._release_timer(event)
            except Exception:
                self._failures += 1
                logger.exception(f"Worker {index} crashed on {event.kind} for lead {event.lead_id}")
                self._release_timer(event)
            finally:
                self._queue.task_done()

    def _release_timer(self, event: LeadEvent) -> None:
        # The wake is still in the store; let the scheduler fire it again later
        if isinstance(event, TimerFired):
            self._scheduler.release(
                event.lead_id, event.generation, retry_in=self._config.retry.max_delay
            )

    # === CAMPAIGNS ===

    async def publish_graph(self, graph: FlowGraph) -> FlowGraph:
        return await self._registry.publish(graph)

    async def migrate_lead(
        self, lead_id: str, to_version: int | None = None, node_map: dict[str, str] | None = None
    ) -> LeadExecutionContext:
        return await self._driver.migrate(lead_id, to_version=to_version, node_map=node_map)

    # === COMMANDS ===

    async def enroll(
        self,
        lead_id: str,
        campaign_id: str,
        source: str = "inbound",
        profile: dict[str, Any] | None = None,
        variables: dict[str, Any] | None = None,
        rebind: bool = False,
    ) -> LeadExecutionContext | None:
        return await self.process(
            EnrollLead(
                lead_id=lead_id,
                campaign_id=campaign_id,
                source=source,
                profile=profile or {},
                variables=variables or {},
                rebind=rebind,
            )
        )

    async def inbound(
        self, lead_id: str, text: str, channel: str = "inbound", intent: str | None = None
    ) -> LeadExecutionContext | None:
        return await self.process(
            InboundMessage(lead_id=lead_id, text=text, channel=channel, intent=intent)
        )

    async def force_advance(
        self, lead_id: str, port: str | None = None, reason: str = "manual override"
    ) -> LeadExecutionContext | None:
        return await self.process(ForceAdvance(lead_id=lead_id, port=port, reason=reason))

    async def return_from_handoff(
        self, lead_id: str, resume_node_id: str | None = None, note: str | None = None
    ) -> LeadExecutionContext | None:
        return await self.process(
            ReturnFromHandoff(lead_id=lead_id, resume_node_id=resume_node_id, note=note)
        )

    async def get_context(self, lead_id: str) -> LeadExecutionContext | None:
        return await self._store.load_context(lead_id)

    def get_stats(self) -> dict:
        return {
            "running": self._running,
            "workers": len(self._workers),
            "queued": self._queue.qsize(),
            "failures": self._failures,
            "events": self._event_bus.get_stats(),
        }
