"""Intent normalization.

Classifiers (the AI service, upstream routers) label replies with a wide
vocabulary. Logic nodes only route on four intents, so every label is
folded onto one of them, or onto None when it means nothing to routing.
"""

INTERESTED = "interested"
NOT_INTERESTED = "not_interested"
QUESTION = "question"
HANDOFF = "handoff"

# Intents that end an agent conversation regardless of slot progress
TERMINAL_INTENTS = frozenset({INTERESTED, NOT_INTERESTED, HANDOFF})

_EXACT = {
    "INTERESTED": INTERESTED,
    "VERY_INTERESTED": INTERESTED,
    "READY_TO_BUY": INTERESTED,
    "DEMO_REQUEST": INTERESTED,
    "NOT_INTERESTED": NOT_INTERESTED,
    "CONFIRMATION_NO": NOT_INTERESTED,
    "UNSUBSCRIBE": NOT_INTERESTED,
    "QUESTION": QUESTION,
    "PRICING_QUERY": QUESTION,
    "FEATURE_QUERY": QUESTION,
    "HANDOFF_REQUEST": HANDOFF,
    "HANDOFF": HANDOFF,
    "COMPLAINT": HANDOFF,
}


def normalize_intent(raw: str | None) -> str | None:
    """Fold a classifier label onto a routing intent, or None."""
    if not raw:
        return None
    label = raw.strip().upper().replace("-", "_").replace(" ", "_")
    if label in _EXACT:
        return _EXACT[label]

    # Free-form labels ("not really interested", "asking about cost")
    if "INTEREST" in label:
        return NOT_INTERESTED if "NOT" in label or "NO_" in label else INTERESTED
    if "HANDOFF" in label or "HUMAN" in label or "AGENT" in label:
        return HANDOFF
    if "PRICE" in label or "PRICING" in label or "COST" in label:
        return QUESTION
    if "DEMO" in label or "BUY" in label:
        return INTERESTED
    if "QUESTION" in label or "QUERY" in label:
        return QUESTION
    return None
