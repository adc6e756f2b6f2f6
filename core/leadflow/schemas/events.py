"""
Lead events - everything that can move a lead forward.

External events arrive through the webhook server or the runtime API;
TimerFired comes from the wake scheduler; NodeEntered is synthesized by
the driver when one node hands control to the next within a chain.
"""

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from leadflow.schemas.context import utc_now


def _event_id() -> str:
    return uuid4().hex


class _EventBase(BaseModel):
    lead_id: str = Field(min_length=1)
    event_id: str = Field(default_factory=_event_id)

    model_config = {"frozen": True}


class InboundMessage(_EventBase):
    """A reply from the lead."""

    kind: Literal["inbound_message"] = "inbound_message"
    text: str
    channel: str = "inbound"
    received_at: datetime = Field(default_factory=utc_now)
    intent: str | None = Field(default=None, description="Pre-classified intent, if any")


class TimerFired(_EventBase):
    """A scheduled wake came due."""

    kind: Literal["timer_fired"] = "timer_fired"
    generation: int
    wake_at: datetime


class EnrollLead(_EventBase):
    """Bind a lead to a campaign and start it at the trigger."""

    kind: Literal["enroll"] = "enroll"
    campaign_id: str = Field(min_length=1)
    source: str = "inbound"
    profile: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    rebind: bool = Field(
        default=False, description="Re-enroll a lead that already has a context"
    )


class ForceAdvance(_EventBase):
    """Operator override: leave the current node through ``port``."""

    kind: Literal["force_advance"] = "force_advance"
    port: str | None = None
    reason: str = "manual override"


class ReturnFromHandoff(_EventBase):
    """Operator hands a lead back to automation."""

    kind: Literal["return_from_handoff"] = "return_from_handoff"
    resume_node_id: str | None = None
    note: str | None = None


class NodeEntered(_EventBase):
    """Internal: control arrived at the current node from ``from_node_id``."""

    kind: Literal["node_entered"] = "node_entered"
    from_node_id: str | None = None
    intent: str | None = None


LeadEvent = Annotated[
    InboundMessage | TimerFired | EnrollLead | ForceAdvance | ReturnFromHandoff | NodeEntered,
    Field(discriminator="kind"),
]

EXTERNAL_EVENT_KINDS = frozenset(
    {"inbound_message", "enroll", "force_advance", "return_from_handoff"}
)
