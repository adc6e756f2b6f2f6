"""
Node Protocol - the closed set of flow node kinds.

A flow graph is built from eleven node kinds. Each kind carries its own
typed, immutable configuration; the `kind` field discriminates them so a
graph document loaded from JSON becomes the right model automatically.

Node Kinds:
- trigger: enrollment gate, filters on inbound source
- delay: waits a fixed duration (optionally interrupted by a reply)
- split: A/B branch by percentage, one draw per visit
- action / broadcast: one side effect, then continue
- logic: routes on the last classified intent or on variable conditions
- goto: in-graph jump
- goto_campaign: transfer the lead to another campaign
- handoff: hand the lead to a human or another campaign
- closing: terminal, records the final status
- agent: AI-driven conversation that fills slots
"""

from datetime import timedelta
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class NodeKind(StrEnum):
    """The closed set of node kinds."""

    TRIGGER = "trigger"
    DELAY = "delay"
    SPLIT = "split"
    ACTION = "action"
    BROADCAST = "broadcast"
    LOGIC = "logic"
    GOTO = "goto"
    GOTO_CAMPAIGN = "goto_campaign"
    HANDOFF = "handoff"
    CLOSING = "closing"
    AGENT = "agent"


class FinalStatus(StrEnum):
    """Terminal outcome recorded by a closing node."""

    COMPLETED = "completed"
    WON = "won"
    LOST = "lost"
    ARCHIVED = "archived"


class DelayUnit(StrEnum):
    SECONDS = "s"
    MINUTES = "m"
    HOURS = "h"
    DAYS = "d"


_UNIT_SECONDS = {
    DelayUnit.SECONDS: 1,
    DelayUnit.MINUTES: 60,
    DelayUnit.HOURS: 3600,
    DelayUnit.DAYS: 86400,
}

# Source recorded for leads arriving from another campaign
TRANSFER_SOURCE = "transfer"


class _NodeBase(BaseModel):
    id: str = Field(min_length=1, description="Unique within the graph")
    label: str = ""

    # Editors attach layout data (position, colour); it is accepted and ignored
    model_config = {"frozen": True, "extra": "ignore"}


# ---------------------------------------------------------------------------
# Entry and timing
# ---------------------------------------------------------------------------


class TriggerNode(_NodeBase):
    """Entry node. Admits a lead only if its source is allowed."""

    kind: Literal["trigger"] = "trigger"
    allowed_sources: tuple[str, ...] = Field(
        default=(), description="Empty means every source is admitted"
    )
    triage: bool = Field(default=False, description="Capture everything regardless of source")

    def admits(self, source: str) -> bool:
        if self.triage or not self.allowed_sources or source == TRANSFER_SOURCE:
            return True
        return source.lower() in {s.lower() for s in self.allowed_sources}


class DelayNode(_NodeBase):
    """Wait for a fixed duration before continuing."""

    kind: Literal["delay"] = "delay"
    duration: int = Field(ge=0)
    unit: DelayUnit = DelayUnit.MINUTES
    interrupt_on_reply: bool = Field(
        default=True, description="A reply during the wait continues the flow immediately"
    )

    @field_validator("unit", mode="before")
    @classmethod
    def _normalize_unit(cls, value: Any) -> Any:
        # Accept "minutes", "Hours", "sec" and the like
        if isinstance(value, str) and value:
            head = value.strip().lower()[0]
            if head in {"s", "m", "h", "d"}:
                return head
        return value

    @property
    def wait_for(self) -> timedelta:
        return timedelta(seconds=self.duration * _UNIT_SECONDS[self.unit])


class SplitNode(_NodeBase):
    """Percentage split between two named branches."""

    kind: Literal["split"] = "split"
    variant_a_percent: int = Field(default=50, ge=0, le=100)
    branches: tuple[str, str] = ("variant_a", "variant_b")

    @field_validator("branches")
    @classmethod
    def _distinct_branches(cls, value: tuple[str, str]) -> tuple[str, str]:
        if not value[0] or not value[1] or value[0] == value[1]:
            raise ValueError("split branches must be two distinct non-empty names")
        return value


# ---------------------------------------------------------------------------
# Side effects
# ---------------------------------------------------------------------------


class SendMessageAction(BaseModel):
    type: Literal["send_message"] = "send_message"
    template: str = Field(description="Supports {{variable}} placeholders and {a|b} spintax")
    channel: str | None = Field(default=None, description="Defaults to the lead's channel")

    model_config = {"frozen": True}


class AddTagAction(BaseModel):
    type: Literal["add_tag"] = "add_tag"
    tag: str = Field(min_length=1)

    model_config = {"frozen": True}


class RemoveTagAction(BaseModel):
    type: Literal["remove_tag"] = "remove_tag"
    tag: str = Field(min_length=1)

    model_config = {"frozen": True}


class SetStatusAction(BaseModel):
    type: Literal["set_status"] = "set_status"
    status: str = Field(min_length=1, description="CRM status, e.g. qualified or proposal")

    model_config = {"frozen": True}


class WebhookAction(BaseModel):
    type: Literal["webhook"] = "webhook"
    url: str
    method: Literal["POST", "PUT"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = Field(default=10.0, gt=0)

    model_config = {"frozen": True}


SubAction = Annotated[
    SendMessageAction | AddTagAction | RemoveTagAction | SetStatusAction | WebhookAction,
    Field(discriminator="type"),
]


class ActionNode(_NodeBase):
    """Perform one sub-action, then continue."""

    kind: Literal["action"] = "action"
    action: SubAction


class BroadcastNode(_NodeBase):
    """Same contract as an action node; used for campaign-wide sends."""

    kind: Literal["broadcast"] = "broadcast"
    action: SubAction


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class ConditionOperator(StrEnum):
    EQ = "=="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class LogicCondition(BaseModel):
    """Compare one lead variable against a value. Comparison is case-insensitive."""

    variable: str = Field(min_length=1)
    operator: ConditionOperator = ConditionOperator.EQ
    value: Any = None

    model_config = {"frozen": True}


class LogicNode(_NodeBase):
    """
    Route on the last classified intent, or on variable conditions.

    With conditions configured, the first matching condition i exits via
    port ``condition_<i>``; otherwise the intent maps to one of the intent
    ports. Both modes fall back to ``default``.
    """

    kind: Literal["logic"] = "logic"
    conditions: tuple[LogicCondition, ...] = ()


class GotoNode(_NodeBase):
    kind: Literal["goto"] = "goto"
    target_node_id: str = Field(min_length=1)


class GotoCampaignNode(_NodeBase):
    kind: Literal["goto_campaign"] = "goto_campaign"
    target_campaign_id: str = Field(min_length=1)
    reason: str = "automated_triage"


class HandoffTarget(StrEnum):
    HUMAN = "human"
    CAMPAIGN = "campaign"


class HandoffNode(_NodeBase):
    """Escalate to a human operator or another campaign."""

    kind: Literal["handoff"] = "handoff"
    target: HandoffTarget = HandoffTarget.HUMAN
    target_campaign_id: str | None = None
    reason: str = "AI requested help"
    enable_summary: bool = Field(
        default=False, description="Summarize the conversation for the human operator"
    )


class ClosingNode(_NodeBase):
    kind: Literal["closing"] = "closing"
    final_status: FinalStatus = FinalStatus.COMPLETED
    clear_variables: bool = True


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class AgentGoal(StrEnum):
    QUALIFY_LEAD = "QUALIFY_LEAD"
    CLOSE_SALE = "CLOSE_SALE"
    SCHEDULE_MEETING = "SCHEDULE_MEETING"
    HANDLE_OBJECTION = "HANDLE_OBJECTION"
    PROVIDE_INFO = "PROVIDE_INFO"
    RECOVER_COLD = "RECOVER_COLD"
    ONBOARD_USER = "ONBOARD_USER"
    SUPPORT_TICKET = "SUPPORT_TICKET"
    CUSTOM = "CUSTOM"


class FollowUpAction(StrEnum):
    """Calls to action the AI may request."""

    ASK_QUESTION = "ASK_QUESTION"
    PROPOSE_DEMO = "PROPOSE_DEMO"
    SEND_PROPOSAL = "SEND_PROPOSAL"
    SCHEDULE_CALL = "SCHEDULE_CALL"
    CONFIRM_INTEREST = "CONFIRM_INTEREST"
    REQUEST_HANDOFF = "REQUEST_HANDOFF"


class SlotSpec(BaseModel):
    """A piece of information the agent must collect."""

    name: str = Field(min_length=1)
    type: Literal["string", "number", "boolean", "enum"] = "string"
    options: tuple[str, ...] = ()
    description: str = ""

    model_config = {"frozen": True}


class SuccessCriteria(BaseModel):
    min_slots_filled: int | None = Field(
        default=None, ge=0, description="None means every slot must be filled"
    )

    model_config = {"frozen": True}


class IndustryContext(BaseModel):
    vertical: str = "GENERIC"
    company_name: str = ""
    notes: str = ""

    model_config = {"frozen": True}


class AgentNode(_NodeBase):
    """AI conversation node: replies, extracts slots and advances on success."""

    kind: Literal["agent"] = "agent"
    persona_id: str = Field(min_length=1)
    model: str | None = Field(default=None, description="Overrides the engine's default model")
    goal: AgentGoal = AgentGoal.QUALIFY_LEAD
    custom_goal: str | None = None
    slots: tuple[SlotSpec, ...] = ()
    success_criteria: SuccessCriteria = Field(default_factory=SuccessCriteria)
    allowed_actions: tuple[FollowUpAction, ...] = (FollowUpAction.ASK_QUESTION,)
    industry: IndustryContext = Field(default_factory=IndustryContext)
    send_opener: bool = Field(
        default=False, description="Speak first on entry instead of waiting for a reply"
    )

    @field_validator("slots", mode="before")
    @classmethod
    def _coerce_slot_names(cls, value: Any) -> Any:
        # ["budget", "timeline"] is shorthand for string slots
        if isinstance(value, (list, tuple)):
            return [{"name": v} if isinstance(v, str) else v for v in value]
        return value

    @model_validator(mode="after")
    def _check_goal(self) -> "AgentNode":
        if self.goal == AgentGoal.CUSTOM and not (self.custom_goal or "").strip():
            raise ValueError("agent with CUSTOM goal requires custom_goal")
        return self

    @property
    def slot_names(self) -> tuple[str, ...]:
        return tuple(s.name for s in self.slots)

    @property
    def required_slot_count(self) -> int:
        if self.success_criteria.min_slots_filled is None:
            return len(self.slots)
        return self.success_criteria.min_slots_filled

    @property
    def objective(self) -> str:
        if self.goal == AgentGoal.CUSTOM and self.custom_goal:
            return self.custom_goal
        return self.goal.value


NodeSpec = Annotated[
    TriggerNode
    | DelayNode
    | SplitNode
    | ActionNode
    | BroadcastNode
    | LogicNode
    | GotoNode
    | GotoCampaignNode
    | HandoffNode
    | ClosingNode
    | AgentNode,
    Field(discriminator="kind"),
]
