"""
Event Bus - Pub/sub notifications about lead progress.

Lets the rest of a deployment observe the engine without touching it:
- CRM sync subscribes to lead_closed / lead_handed_off
- Operator dashboards subscribe to everything for one lead
- The webhook server announces inbound requests
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Lead lifecycle
    LEAD_ENROLLED = "lead_enrolled"
    NODE_ENTERED = "node_entered"
    LEAD_ADVANCED = "lead_advanced"
    LEAD_WAITING = "lead_waiting"
    LEAD_CLOSED = "lead_closed"
    LEAD_HANDED_OFF = "lead_handed_off"
    LEAD_RETURNED = "lead_returned"
    LEAD_TRANSFERRED = "lead_transferred"

    # Delivery and failure tracking
    MESSAGE_SENT = "message_sent"
    EFFECT_RETRY = "effect_retry"
    EVENT_DROPPED = "event_dropped"

    # External triggers
    WEBHOOK_RECEIVED = "webhook_received"

    # Custom events
    CUSTOM = "custom"


@dataclass
class FlowEvent:
    """A notification about one lead."""

    type: EventType
    lead_id: str
    campaign_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str | None = None  # The lead event that caused this

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "lead_id": self.lead_id,
            "campaign_id": self.campaign_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
        }


# Type for event handlers
EventHandler = Callable[[FlowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_lead: str | None = None  # Only receive events for this lead
    filter_campaign: str | None = None  # Only receive events for this campaign


class EventBus:
    """
    Pub/sub event bus for flow notifications.

    Features:
    - Async event handling, bounded concurrency
    - Type-based subscriptions with lead/campaign filters
    - Event history for debugging

    Example:
        bus = EventBus()

        async def on_closed(event: FlowEvent):
            print(f"{event.lead_id} closed as {event.data['final_status']}")

        bus.subscribe(event_types=[EventType.LEAD_CLOSED], handler=on_closed)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[FlowEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_lead: str | None = None,
        filter_campaign: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_lead=filter_lead,
            filter_campaign=filter_campaign,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: FlowEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            s.handler for s in self._subscriptions.values() if self._matches(s, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: FlowEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_lead and subscription.filter_lead != event.lead_id:
            return False
        if subscription.filter_campaign and subscription.filter_campaign != event.campaign_id:
            return False
        return True

    async def _execute_handlers(self, event: FlowEvent, handlers: list[EventHandler]) -> None:
        """Run handlers concurrently with rate limiting; their errors never reach the engine."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_lead_enrolled(
        self, lead_id: str, campaign_id: str, graph_version: int, source: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.LEAD_ENROLLED,
                lead_id=lead_id,
                campaign_id=campaign_id,
                data={"graph_version": graph_version, "source": source},
            )
        )

    async def emit_node_entered(
        self, lead_id: str, campaign_id: str, node_id: str, kind: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_ENTERED,
                lead_id=lead_id,
                campaign_id=campaign_id,
                node_id=node_id,
                data={"kind": kind},
            )
        )

    async def emit_lead_advanced(
        self,
        lead_id: str,
        campaign_id: str,
        from_node: str,
        to_node: str,
        port: str,
        correlation_id: str | None = None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.LEAD_ADVANCED,
                lead_id=lead_id,
                campaign_id=campaign_id,
                node_id=from_node,
                data={"to_node": to_node, "port": port},
                correlation_id=correlation_id,
            )
        )

    async def emit_lead_waiting(
        self,
        lead_id: str,
        campaign_id: str,
        node_id: str,
        wake_at: datetime | None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.LEAD_WAITING,
                lead_id=lead_id,
                campaign_id=campaign_id,
                node_id=node_id,
                data={
                    "waiting_for": "timer" if wake_at else "reply",
                    "wake_at": wake_at.isoformat() if wake_at else None,
                },
            )
        )

    async def emit_lead_closed(
        self, lead_id: str, campaign_id: str, node_id: str, final_status: str, reason: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.LEAD_CLOSED,
                lead_id=lead_id,
                campaign_id=campaign_id,
                node_id=node_id,
                data={"final_status": final_status, "reason": reason},
            )
        )

    async def emit_lead_handed_off(
        self,
        lead_id: str,
        campaign_id: str,
        node_id: str,
        reason: str,
        summary: str | None = None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.LEAD_HANDED_OFF,
                lead_id=lead_id,
                campaign_id=campaign_id,
                node_id=node_id,
                data={"reason": reason, "summary": summary},
            )
        )

    async def emit_lead_returned(
        self, lead_id: str, campaign_id: str, resume_node_id: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.LEAD_RETURNED,
                lead_id=lead_id,
                campaign_id=campaign_id,
                node_id=resume_node_id,
            )
        )

    async def emit_lead_transferred(
        self, lead_id: str, from_campaign: str, to_campaign: str, reason: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.LEAD_TRANSFERRED,
                lead_id=lead_id,
                campaign_id=to_campaign,
                data={"from_campaign": from_campaign, "reason": reason},
            )
        )

    async def emit_message_sent(
        self, lead_id: str, campaign_id: str, node_id: str, text: str, channel: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.MESSAGE_SENT,
                lead_id=lead_id,
                campaign_id=campaign_id,
                node_id=node_id,
                data={"text": text, "channel": channel},
            )
        )

    async def emit_effect_retry(
        self, lead_id: str, effect: str, attempt: int, max_attempts: int, error: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.EFFECT_RETRY,
                lead_id=lead_id,
                data={
                    "effect": effect,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "error": error,
                },
            )
        )

    async def emit_event_dropped(self, lead_id: str, event_kind: str, reason: str) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.EVENT_DROPPED,
                lead_id=lead_id,
                data={"event": event_kind, "reason": reason},
            )
        )

    async def emit_webhook_received(
        self,
        path: str,
        method: str,
        payload: dict[str, Any],
        lead_id: str = "",
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.WEBHOOK_RECEIVED,
                lead_id=lead_id,
                data={"path": path, "method": method, "payload": payload},
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        lead_id: str | None = None,
        limit: int = 100,
    ) -> list[FlowEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if lead_id:
            events = [e for e in events if e.lead_id == lead_id]
        return events[:limit]

    def get_stats(self) -> dict:
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        lead_id: str | None = None,
        timeout: float | None = None,
    ) -> FlowEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: FlowEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: FlowEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(event_types=[event_type], handler=handler, filter_lead=lead_id)
        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
