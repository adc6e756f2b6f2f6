"""Tests for the EventBus - subscriptions, filters and history."""

import asyncio

import pytest

from leadflow.runtime.event_bus import EventBus, EventType, FlowEvent


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_handler_receives_matching_types(self):
        bus = EventBus()
        received = []

        async def handler(event: FlowEvent):
            received.append(event)

        bus.subscribe(event_types=[EventType.LEAD_CLOSED], handler=handler)
        await bus.emit_lead_closed("lead-1", "welcome", "done", "won", "closing node")
        await bus.emit_lead_waiting("lead-1", "welcome", "wait", None)

        assert [e.type for e in received] == [EventType.LEAD_CLOSED]
        assert received[0].data == {"final_status": "won", "reason": "closing node"}

    @pytest.mark.asyncio
    async def test_lead_and_campaign_filters(self):
        bus = EventBus()
        for_lead, for_campaign = [], []

        async def on_lead(event):
            for_lead.append(event.lead_id)

        async def on_campaign(event):
            for_campaign.append(event.lead_id)

        bus.subscribe([EventType.MESSAGE_SENT], on_lead, filter_lead="lead-1")
        bus.subscribe([EventType.MESSAGE_SENT], on_campaign, filter_campaign="promo")
        await bus.emit_message_sent("lead-1", "welcome", "greet", "Hi", "sms")
        await bus.emit_message_sent("lead-2", "promo", "greet", "Hi", "sms")

        assert for_lead == ["lead-1"]
        assert for_campaign == ["lead-2"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        sub_id = bus.subscribe([EventType.LEAD_ENROLLED], handler)
        assert bus.unsubscribe(sub_id)
        assert not bus.unsubscribe(sub_id)
        await bus.emit_lead_enrolled("lead-1", "welcome", 1, "inbound")
        assert received == []

    @pytest.mark.asyncio
    async def test_failing_handler_is_contained(self):
        bus = EventBus()
        received = []

        async def broken(event):
            raise RuntimeError("crm down")

        async def working(event):
            received.append(event)

        bus.subscribe([EventType.LEAD_HANDED_OFF], broken)
        bus.subscribe([EventType.LEAD_HANDED_OFF], working)
        await bus.emit_lead_handed_off("lead-1", "welcome", "bot", "ai service failure", None)

        assert len(received) == 1


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_is_most_recent_first_and_bounded(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            await bus.emit_node_entered(f"lead-{i}", "welcome", "start", "trigger")

        history = bus.get_history()
        assert [e.lead_id for e in history] == ["lead-4", "lead-3", "lead-2"]
        assert bus.get_history(lead_id="lead-3")[0].node_id == "start"
        assert bus.get_stats()["events_by_type"] == {"node_entered": 3}

    @pytest.mark.asyncio
    async def test_to_dict(self):
        bus = EventBus()
        await bus.emit_lead_transferred("lead-1", "main", "nurture", "automated_triage")

        data = bus.get_history()[0].to_dict()
        assert data["type"] == "lead_transferred"
        assert data["campaign_id"] == "nurture"
        assert data["data"]["from_campaign"] == "main"


class TestWaitFor:
    @pytest.mark.asyncio
    async def test_wait_for_event(self):
        bus = EventBus()

        async def close_later():
            await asyncio.sleep(0.01)
            await bus.emit_lead_closed("lead-1", "welcome", "done", "lost", "no reply")

        task = asyncio.create_task(close_later())
        event = await bus.wait_for(EventType.LEAD_CLOSED, lead_id="lead-1", timeout=1.0)
        await task
        assert event.data["final_status"] == "lost"

    @pytest.mark.asyncio
    async def test_wait_for_times_out(self):
        bus = EventBus()
        assert await bus.wait_for(EventType.LEAD_CLOSED, timeout=0.01) is None
