"""Durable and transient data shapes of the flow engine."""

from leadflow.schemas.context import (
    ConversationTurn,
    Enrollment,
    Escalation,
    HistoryEntry,
    LeadExecutionContext,
    LeadStatus,
)
from leadflow.schemas.events import (
    EnrollLead,
    ForceAdvance,
    InboundMessage,
    LeadEvent,
    NodeEntered,
    ReturnFromHandoff,
    TimerFired,
)

__all__ = [
    "ConversationTurn",
    "Enrollment",
    "Escalation",
    "HistoryEntry",
    "LeadExecutionContext",
    "LeadStatus",
    "EnrollLead",
    "ForceAdvance",
    "InboundMessage",
    "LeadEvent",
    "NodeEntered",
    "ReturnFromHandoff",
    "TimerFired",
]
