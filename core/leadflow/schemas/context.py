"""
Lead Execution Context - durable per-lead state.

One context exists per lead. It binds the lead to a campaign and the
graph version it enrolled on, records where the lead is, what it is
waiting for, and an append-only history of every node it passed through.

Two counters guard it:
- generation: bumped on every transition; timers carry the generation
  they were armed under and are ignored once it moves on
- version: bumped on every save; stores reject saves based on a stale copy

Version History:
- v1.0: Initial schema
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from leadflow.graph.nodes import FinalStatus

RECENT_EVENT_LIMIT = 50
CONVERSATION_LIMIT = 200


def utc_now() -> datetime:
    return datetime.now(UTC)


class LeadStatus(StrEnum):
    """Where a lead is in its flow."""

    RUNNING = "running"  # Between hops, about to evaluate its current node
    WAITING_TIMER = "waiting_timer"  # Parked on a delay until pending_wake_at
    WAITING_REPLY = "waiting_reply"  # Parked on an agent until the lead answers
    HANDED_OFF = "handed_off"  # With a human operator; no automated advance
    CLOSED = "closed"  # Terminal


class HistoryEntry(BaseModel):
    """One evaluated node and what came of it."""

    node_id: str
    campaign_id: str
    graph_version: int
    entered_at: datetime
    outcome: str  # advance | wait | terminate | transfer | escalate | forced | resume
    port: str | None = None
    intent: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


class ConversationTurn(BaseModel):
    role: str  # "lead" | "agent" | "operator"
    text: str
    at: datetime
    node_id: str | None = None


class Enrollment(BaseModel):
    """A campaign binding the lead has held, most recent last."""

    campaign_id: str
    graph_version: int
    enrolled_at: datetime
    reason: str = "enrolled"


class Escalation(BaseModel):
    """Why and where a lead was handed to a human."""

    reason: str
    node_id: str
    at: datetime
    resume_node_id: str | None = None
    summary: str | None = None


class LeadExecutionContext(BaseModel):
    """
    Complete durable state of one lead's flow execution.

    Only the driver mutates it, and only while holding the lead's lease.
    """

    schema_version: str = "1.0"

    # Identity and binding
    lead_id: str
    campaign_id: str
    graph_version: int
    current_node_id: str

    # Status
    status: LeadStatus = LeadStatus.RUNNING
    final_status: FinalStatus | None = None
    pending_wake_at: datetime | None = None
    escalation: Escalation | None = None

    # Guards
    generation: int = 0
    version: int = 0

    # Data
    variables: dict[str, Any] = Field(default_factory=dict)
    history: list[HistoryEntry] = Field(default_factory=list)
    conversation: list[ConversationTurn] = Field(default_factory=list)
    enrollments: list[Enrollment] = Field(default_factory=list)
    channel: str = "inbound"
    profile: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    lead_status: str | None = None

    # Deduplication of redelivered events and acknowledged side effects
    recent_event_ids: list[str] = Field(default_factory=list)
    delivered_effects: list[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"extra": "allow"}

    def last_intent(self) -> str | None:
        """Most recent intent classified for this lead, if any."""
        for entry in reversed(self.history):
            if entry.intent:
                return entry.intent
        return None

    def has_seen_event(self, event_id: str) -> bool:
        return event_id in self.recent_event_ids

    def remember_event(self, event_id: str) -> None:
        self.recent_event_ids.append(event_id)
        del self.recent_event_ids[:-RECENT_EVENT_LIMIT]

    def record_turn(self, role: str, text: str, at: datetime, node_id: str | None = None) -> None:
        self.conversation.append(ConversationTurn(role=role, text=text, at=at, node_id=node_id))
        del self.conversation[:-CONVERSATION_LIMIT]

    def recent_turns(self, limit: int) -> list[ConversationTurn]:
        return self.conversation[-limit:] if limit > 0 else []

    def template_values(self) -> dict[str, Any]:
        """Values available to message templates: profile first, variables override."""
        return {**self.profile, **self.variables, "lead_id": self.lead_id}
