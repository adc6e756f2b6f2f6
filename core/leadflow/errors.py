"""
Error taxonomy for the flow engine.

Every failure path in the engine maps onto one of these:
- GraphValidationError: malformed graph, raised at publish/load time only
- TransientSideEffectError: retried with backoff, then escalated to a human
- StaleEventError: superseded timer/reply, logged and dropped
- ConcurrencyConflict: optimistic save rejected, re-applied once
- AIServiceError: decision call failed, retried, then degraded to handoff
"""


class LeadFlowError(Exception):
    """Base class for all engine errors."""


class GraphValidationError(LeadFlowError):
    """A graph failed structural or per-kind validation."""

    def __init__(self, errors: list[str], campaign_id: str | None = None):
        self.errors = list(errors)
        self.campaign_id = campaign_id
        prefix = f"Invalid graph '{campaign_id}'" if campaign_id else "Invalid graph"
        super().__init__(f"{prefix}: {'; '.join(self.errors)}")


class TransientSideEffectError(LeadFlowError):
    """A message send, webhook call or other side effect failed and may be retried."""


class StaleEventError(LeadFlowError):
    """An event targets a superseded generation or a context that accepts no events."""


class ConcurrencyConflict(LeadFlowError):
    """An optimistic save found a different version than the one it was based on."""

    def __init__(self, lead_id: str, expected: int | None, actual: int | None):
        self.lead_id = lead_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict for lead '{lead_id}': expected {expected}, found {actual}"
        )


class AIServiceError(LeadFlowError):
    """The AI decision service failed or timed out."""


class LeaseUnavailableError(LeadFlowError):
    """The per-lead lease is held elsewhere and could not be acquired in time."""


class CommandRejectedError(LeadFlowError):
    """An external command does not apply to the lead's current state."""
