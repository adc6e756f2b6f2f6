"""Runtime: driver, scheduler, workers and the surfaces around them."""

from leadflow.runtime.driver import FlowDriver
from leadflow.runtime.event_bus import EventBus, EventType, FlowEvent
from leadflow.runtime.flow_runtime import FlowRuntime
from leadflow.runtime.gateways import (
    HttpMessagingGateway,
    MessagingGateway,
    OutboxGateway,
    WebhookClient,
)
from leadflow.runtime.scheduler import WakeScheduler

__all__ = [
    "EventBus",
    "EventType",
    "FlowDriver",
    "FlowEvent",
    "FlowRuntime",
    "HttpMessagingGateway",
    "MessagingGateway",
    "OutboxGateway",
    "WakeScheduler",
    "WebhookClient",
]
