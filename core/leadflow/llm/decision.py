"""AI decision service abstraction for agent nodes.

The engine never talks to a model directly: an agent node hands the
service a compact request (persona, objective, slots, recent turns) and
gets back a reply, extracted slot values, a classified intent and an
optional follow-up action.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class AIDecisionRequest:
    """Everything the model sees for one agent turn."""

    lead_id: str
    persona_id: str
    objective: str
    slots: list[dict[str, Any]]
    current_slots: dict[str, Any]
    conversation: list[dict[str, str]]
    allowed_actions: list[str] = field(default_factory=list)
    industry: dict[str, Any] = field(default_factory=dict)
    model: str | None = None
    latest_message: str | None = None


@dataclass
class AIDecision:
    """What the model decided for one agent turn."""

    reply_text: str | None = None
    filled_slots: dict[str, Any] = field(default_factory=dict)
    intent: str | None = None
    requested_action: str | None = None


class AIDecisionService(ABC):
    """
    Pluggable AI backend for agent nodes and handoff summaries.

    Implementations raise AIServiceError on any failure; the driver owns
    retries and the fallback to a human handoff.
    """

    @abstractmethod
    async def decide(self, request: AIDecisionRequest) -> AIDecision:
        """Produce the agent's next reply and slot extraction."""

    @abstractmethod
    async def summarize(
        self, lead_id: str, conversation: list[dict[str, str]], model: str | None = None
    ) -> str:
        """Summarize a conversation for a human operator."""
