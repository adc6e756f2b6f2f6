"""Tests for FlowRuntime - workers, timers and crash recovery wired together."""

import asyncio
from datetime import timedelta

import pytest
from flows import T0, FakeClock, fast_config, make_graph

from leadflow.errors import CommandRejectedError, ConcurrencyConflict
from leadflow.llm.mock import ScriptedDecisionService
from leadflow.runtime.event_bus import EventType
from leadflow.runtime.flow_runtime import FlowRuntime
from leadflow.runtime.gateways import OutboxGateway
from leadflow.schemas.context import LeadStatus
from leadflow.schemas.events import EnrollLead, InboundMessage
from leadflow.storage.memory import InMemoryStore


def reminder_graph(seconds: int = 0):
    return make_graph(
        "reminder",
        [
            {"id": "start", "kind": "trigger"},
            {"id": "wait", "kind": "delay", "duration": seconds, "unit": "seconds"},
            {
                "id": "ping",
                "kind": "action",
                "action": {"type": "send_message", "template": "Hi {{first_name}}"},
            },
            {"id": "done", "kind": "closing"},
        ],
        [("start", "wait"), ("wait", "ping"), ("ping", "done")],
    )


class ContendedStore(InMemoryStore):
    """Rejects the next ``reject`` saves as if another writer got there first."""

    def __init__(self):
        super().__init__()
        self.reject = 0

    async def save_context(self, ctx, expected_version):
        if self.reject:
            self.reject -= 1
            raise ConcurrencyConflict(ctx.lead_id, expected_version, (expected_version or 0) + 1)
        return await super().save_context(ctx, expected_version)


def make_runtime(store=None, clock=None, **config) -> tuple[FlowRuntime, OutboxGateway]:
    outbox = OutboxGateway()
    runtime = FlowRuntime(
        store=store or InMemoryStore(),
        ai=ScriptedDecisionService(),
        messaging=outbox,
        config=fast_config(**{"max_scheduler_sleep": 0.05, **config}),
        clock=clock or FakeClock(),
    )
    return runtime, outbox


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestWorkers:
    @pytest.mark.asyncio
    async def test_submitted_events_are_processed(self):
        runtime, outbox = make_runtime()
        await runtime.publish_graph(reminder_graph(seconds=0))
        await runtime.start()
        try:
            for i in range(10):
                await runtime.submit(
                    EnrollLead(
                        lead_id=f"lead-{i}", campaign_id="reminder", profile={"first_name": "Jo"}
                    )
                )
            await runtime.join()
        finally:
            await runtime.stop()

        assert len(outbox.sent) == 10
        assert {m.text for m in outbox.sent} == {"Hi Jo"}
        closed = await runtime._store.list_contexts(status=LeadStatus.CLOSED)
        assert len(closed) == 10

    @pytest.mark.asyncio
    async def test_rejected_command_leaves_lead_usable(self):
        runtime, _ = make_runtime()
        await runtime.publish_graph(reminder_graph(seconds=60))
        await runtime.start()
        try:
            await runtime.enroll("lead-1", "reminder")
            with pytest.raises(CommandRejectedError):
                await runtime.return_from_handoff("lead-1")
            await runtime.submit(InboundMessage(lead_id="lead-1", text="hello"))
            await runtime.join()
        finally:
            await runtime.stop()

        ctx = await runtime.get_context("lead-1")
        assert ctx.status == LeadStatus.CLOSED

    @pytest.mark.asyncio
    async def test_stats(self):
        runtime, _ = make_runtime(worker_count=3)
        await runtime.start()
        stats = runtime.get_stats()
        await runtime.stop()

        assert stats["running"] is True
        assert stats["workers"] == 3
        assert stats["failures"] == 0
        assert not runtime.is_running


class TestTimers:
    @pytest.mark.asyncio
    async def test_scheduler_fires_due_delay(self):
        clock = FakeClock()
        runtime, outbox = make_runtime(clock=clock)
        await runtime.publish_graph(reminder_graph(seconds=30))
        await runtime.start()
        try:
            ctx = await runtime.enroll("lead-1", "reminder")
            assert ctx.pending_wake_at == T0 + timedelta(seconds=30)

            clock.advance(seconds=30)

            async def closed():
                ctx = await runtime.get_context("lead-1")
                return ctx.status == LeadStatus.CLOSED

            await wait_until(closed)
        finally:
            await runtime.stop()

        assert len(outbox.sent) == 1

    @pytest.mark.asyncio
    async def test_timer_survives_repeated_conflicts(self):
        store, clock = ContendedStore(), FakeClock()
        runtime, outbox = make_runtime(store=store, clock=clock)
        await runtime.publish_graph(reminder_graph(seconds=30))
        await runtime.start()
        try:
            await runtime.enroll("lead-1", "reminder", profile={"first_name": "Jo"})
            store.reject = 2
            clock.advance(seconds=30)

            async def closed():
                ctx = await runtime.get_context("lead-1")
                return ctx.status == LeadStatus.CLOSED

            await wait_until(closed)
        finally:
            await runtime.stop()

        assert [m.text for m in outbox.sent] == ["Hi Jo"]
        assert await store.next_wake_at() is None
        assert runtime.get_stats()["failures"] == 0

    @pytest.mark.asyncio
    async def test_timer_hands_lead_off_when_conflicts_persist(self):
        store, clock = ContendedStore(), FakeClock()
        runtime, _ = make_runtime(store=store, clock=clock, max_attempts=2)
        await runtime.publish_graph(reminder_graph(seconds=30))
        await runtime.start()
        try:
            await runtime.enroll("lead-1", "reminder")
            # Two deliveries, each re-applied once
            store.reject = 4
            clock.advance(seconds=30)

            async def handed_off():
                ctx = await runtime.get_context("lead-1")
                return ctx.status == LeadStatus.HANDED_OFF

            await wait_until(handed_off)
        finally:
            await runtime.stop()

        ctx = await runtime.get_context("lead-1")
        assert ctx.escalation.reason == "automation failure"
        assert ctx.escalation.resume_node_id == "wait"
        assert await store.next_wake_at() is None
        assert runtime.get_stats()["failures"] == 1
        assert runtime.event_bus.get_history(event_type=EventType.LEAD_HANDED_OFF)

    @pytest.mark.asyncio
    async def test_command_on_contended_lead_is_escalated(self):
        store = ContendedStore()
        runtime, _ = make_runtime(store=store, max_attempts=1)
        await runtime.publish_graph(reminder_graph(seconds=60))
        await runtime.enroll("lead-1", "reminder")

        store.reject = 2
        ctx = await runtime.force_advance("lead-1")
        assert ctx.status == LeadStatus.HANDED_OFF
        assert ctx.escalation.reason == "automation failure"

    @pytest.mark.asyncio
    async def test_wake_schedule_survives_restart(self):
        store, clock = InMemoryStore(), FakeClock()
        first, _ = make_runtime(store=store, clock=clock)
        await first.publish_graph(reminder_graph(seconds=30))
        await first.enroll("lead-1", "reminder")

        second, outbox = make_runtime(store=store, clock=clock)
        clock.advance(minutes=5)
        await second.start()
        try:

            async def sent():
                return len(outbox.sent) == 1

            await wait_until(sent)
        finally:
            await second.stop()


class TestRecovery:
    @pytest.mark.asyncio
    async def test_interrupted_lead_is_resumed_on_start(self):
        store = InMemoryStore()
        first, _ = make_runtime(store=store)
        await first.publish_graph(reminder_graph(seconds=0))
        ctx = await first.enroll("lead-1", "reminder")

        # Leave the lead as if the process died between two hops
        ctx.status = LeadStatus.RUNNING
        ctx.current_node_id = "ping"
        ctx.final_status = None
        await store.save_context(ctx, ctx.version)

        second, outbox = make_runtime(store=store)
        await second.start()
        try:
            await second.join()
        finally:
            await second.stop()

        assert (await second.get_context("lead-1")).status == LeadStatus.CLOSED
        assert [m.text for m in outbox.sent] == ["Hi"]

    @pytest.mark.asyncio
    async def test_migrate_lead(self):
        runtime, _ = make_runtime()
        await runtime.publish_graph(reminder_graph(seconds=60))
        await runtime.enroll("lead-1", "reminder")
        await runtime.publish_graph(reminder_graph(seconds=60))

        ctx = await runtime.migrate_lead("lead-1")
        assert ctx.graph_version == 2
        assert runtime.event_bus.get_history(event_type=EventType.LEAD_WAITING)
