"""
Evaluation results.

An evaluator never mutates a lead. It returns an Evaluation: exactly one
Outcome saying where the lead goes, plus the variable updates and side
effects that must happen before the outcome is applied.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from leadflow.graph.nodes import FinalStatus

# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Advance:
    """Move to ``target_node_id``; ``port`` records which exit was taken."""

    target_node_id: str
    port: str = "default"


@dataclass(frozen=True)
class Wait:
    """Park the lead. With ``wake_at`` it waits on a timer, otherwise on a reply."""

    wake_at: datetime | None = None


@dataclass(frozen=True)
class Terminate:
    final_status: FinalStatus
    clear_variables: bool = False
    reason: str = ""


@dataclass(frozen=True)
class TransferCampaign:
    """Re-enroll the lead on another campaign's current graph version."""

    campaign_id: str
    carry_variables: bool = True
    reason: str = ""


@dataclass(frozen=True)
class Escalate:
    """Hand the lead to a human (``campaign_id`` None) or to another campaign."""

    reason: str
    campaign_id: str | None = None
    resume_node_id: str | None = None
    summarize: bool = False

    @property
    def to_human(self) -> bool:
        return self.campaign_id is None


Outcome = Advance | Wait | Terminate | TransferCampaign | Escalate


def outcome_name(outcome: Outcome) -> str:
    return {
        Advance: "advance",
        Wait: "wait",
        Terminate: "terminate",
        TransferCampaign: "transfer",
        Escalate: "escalate",
    }[type(outcome)]


# ---------------------------------------------------------------------------
# Side effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SendMessage:
    lead_id: str
    channel: str
    text: str
    idempotency_key: str
    node_id: str = ""


@dataclass(frozen=True)
class CallWebhook:
    lead_id: str
    url: str
    payload: dict[str, Any]
    idempotency_key: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 10.0


Effect = SendMessage | CallWebhook


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


@dataclass
class Evaluation:
    """Everything one node evaluation decided."""

    outcome: Outcome
    variables: dict[str, Any] = field(default_factory=dict)
    effects: list[Effect] = field(default_factory=list)
    add_tags: list[str] = field(default_factory=list)
    remove_tags: list[str] = field(default_factory=list)
    lead_status: str | None = None
    intent: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
