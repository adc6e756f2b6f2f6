"""Action and broadcast nodes: one side effect, then continue."""

from typing import Any

from leadflow.graph.evaluators.base import EvaluationContext
from leadflow.graph.evaluators.templating import render_message
from leadflow.graph.nodes import ActionNode, BroadcastNode
from leadflow.graph.outcome import CallWebhook, Evaluation, SendMessage


def effect_key(ctx: EvaluationContext, node_id: str, index: int = 0) -> str:
    """Stable per visit, so a retried or replayed delivery can be deduplicated downstream."""
    return f"{ctx.lead.lead_id}:{ctx.lead.generation}:{node_id}:{index}"


def lead_snapshot(ctx: EvaluationContext, node_id: str) -> dict[str, Any]:
    lead = ctx.lead
    return {
        "lead_id": lead.lead_id,
        "campaign_id": lead.campaign_id,
        "graph_version": lead.graph_version,
        "node_id": node_id,
        "status": lead.lead_status,
        "tags": list(lead.tags),
        "profile": lead.profile,
        "variables": {k: v for k, v in lead.variables.items() if not k.startswith("__")},
        "sent_at": ctx.now.isoformat(),
    }


def evaluate_action(node: ActionNode | BroadcastNode, ctx: EvaluationContext) -> Evaluation:
    action = node.action
    evaluation = Evaluation(outcome=ctx.advance(node), detail={"action": action.type})

    if action.type == "send_message":
        text = render_message(action.template, ctx.lead.template_values(), ctx.rng)
        evaluation.effects.append(
            SendMessage(
                lead_id=ctx.lead.lead_id,
                channel=action.channel or ctx.lead.channel,
                text=text,
                idempotency_key=effect_key(ctx, node.id),
                node_id=node.id,
            )
        )
    elif action.type == "add_tag":
        evaluation.add_tags.append(action.tag)
    elif action.type == "remove_tag":
        evaluation.remove_tags.append(action.tag)
    elif action.type == "set_status":
        evaluation.lead_status = action.status
    elif action.type == "webhook":
        evaluation.effects.append(
            CallWebhook(
                lead_id=ctx.lead.lead_id,
                url=action.url,
                method=action.method,
                headers=dict(action.headers),
                payload=lead_snapshot(ctx, node.id),
                timeout_seconds=action.timeout_seconds,
                idempotency_key=effect_key(ctx, node.id),
            )
        )
    return evaluation


evaluate_broadcast = evaluate_action
