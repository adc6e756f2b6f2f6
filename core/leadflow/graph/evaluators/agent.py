"""Agent nodes: AI-driven conversation that collects slots."""

import logging
from typing import Any

from leadflow.graph.evaluators.action import effect_key
from leadflow.graph.evaluators.base import EvaluationContext
from leadflow.graph.evaluators.intents import TERMINAL_INTENTS, normalize_intent
from leadflow.graph.nodes import AgentNode, FollowUpAction
from leadflow.graph.outcome import Escalate, Evaluation, SendMessage, Wait

logger = logging.getLogger(__name__)

_UNFILLED = frozenset({"", "unknown", "none", "null", "n/a"})


def is_filled(value: Any) -> bool:
    """A slot counts as filled unless empty or an explicit 'unknown'."""
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() not in _UNFILLED
    return True


def filled_slot_count(node: AgentNode, values: dict[str, Any]) -> int:
    return sum(1 for name in node.slot_names if is_filled(values.get(name)))


def evaluate_agent(node: AgentNode, ctx: EvaluationContext) -> Evaluation:
    """
    Apply one AI decision: send its reply, merge filled slots and advance once
    the success criteria are met or the lead's intent settles the conversation.
    Without a decision (entered silently, or woken by something other than a
    reply) the agent keeps waiting for the lead.
    """
    decision = ctx.decision
    if decision is None:
        return Evaluation(outcome=Wait())

    filled = {k: v for k, v in decision.filled_slots.items() if is_filled(v)}
    intent = normalize_intent(decision.intent)
    evaluation = Evaluation(
        outcome=Wait(),
        variables=filled,
        intent=intent,
        detail={"filled": sorted(filled), "raw_intent": decision.intent},
    )

    if decision.reply_text:
        evaluation.effects.append(
            SendMessage(
                lead_id=ctx.lead.lead_id,
                channel=ctx.lead.channel,
                text=decision.reply_text,
                idempotency_key=effect_key(ctx, node.id),
                node_id=node.id,
            )
        )

    action = (decision.requested_action or "").strip().upper()
    if action:
        if action not in {a.value for a in node.allowed_actions}:
            logger.info(f"Agent '{node.id}' ignored disallowed action {action}")
            evaluation.detail["ignored_action"] = action
        elif action == FollowUpAction.REQUEST_HANDOFF:
            evaluation.outcome = Escalate(
                reason="lead asked for a human", resume_node_id=node.id, summarize=True
            )
            return evaluation
        else:
            evaluation.detail["action"] = action

    known = {**ctx.lead.variables, **filled}
    count = filled_slot_count(node, known)
    evaluation.detail["slots_filled"] = count

    has_criteria = bool(node.slots) or node.success_criteria.min_slots_filled is not None
    if (has_criteria and count >= node.required_slot_count) or intent in TERMINAL_INTENTS:
        evaluation.outcome = ctx.advance(node)
    return evaluation
