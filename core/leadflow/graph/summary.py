"""Handoff summaries: condense a lead's conversation for the human taking over."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from leadflow.errors import AIServiceError

if TYPE_CHECKING:
    from leadflow.llm.decision import AIDecisionService
    from leadflow.schemas.context import LeadExecutionContext

logger = logging.getLogger(__name__)

_TRUNCATE_CHARS = 500


class HandoffSummarizer:
    """Summarize a lead's conversation for a human operator.

    Parameters
    ----------
    ai : AIDecisionService | None
        Optional AI service for abstractive summaries. When *None*, or when
        the service fails, the extractive fallback is used.
    """

    def __init__(self, ai: AIDecisionService | None = None, window: int = 20) -> None:
        self.ai = ai
        self.window = window

    async def summarize(self, lead: LeadExecutionContext) -> str:
        turns = [{"role": t.role, "text": t.text} for t in lead.recent_turns(self.window)]
        if self.ai is not None and turns:
            try:
                summary = await self.ai.summarize(lead.lead_id, turns)
                if summary.strip():
                    return summary.strip()
            except AIServiceError:
                logger.warning(
                    "AI summarization failed; falling back to extractive.", exc_info=True
                )
        return self.extractive_summary(lead)

    def extractive_summary(self, lead: LeadExecutionContext) -> str:
        """Build a summary without a model.

        Strategy:
        - Known slot values and tags, one line each.
        - The lead's first and last messages, truncated to ~500 chars.
        """
        parts: list[str] = []

        known = {k: v for k, v in lead.variables.items() if not k.startswith("__")}
        if known:
            parts.append("Known: " + ", ".join(f"{k}={v}" for k, v in sorted(known.items())))
        if lead.tags:
            parts.append("Tags: " + ", ".join(lead.tags))

        lead_turns = [t for t in lead.conversation if t.role == "lead"]
        if not lead_turns:
            parts.append("The lead has not replied.")
        else:
            parts.append(f"First message: {lead_turns[0].text[:_TRUNCATE_CHARS]}")
            if len(lead_turns) > 1:
                parts.append(f"Last message: {lead_turns[-1].text[:_TRUNCATE_CHARS]}")

        return "\n".join(parts)
