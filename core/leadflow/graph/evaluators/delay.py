from leadflow.graph.evaluators.base import EvaluationContext
from leadflow.graph.nodes import DelayNode
from leadflow.graph.outcome import Evaluation, Wait
from leadflow.schemas.context import LeadStatus
from leadflow.schemas.events import InboundMessage, TimerFired


def evaluate_delay(node: DelayNode, ctx: EvaluationContext) -> Evaluation:
    """
    First evaluation arms a timer for ``now + duration``. Once armed, the
    matching TimerFired continues the flow, never before the wake time. A
    reply interrupts the wait when ``interrupt_on_reply`` is set.
    """
    lead, event = ctx.lead, ctx.event
    armed = (
        lead.status == LeadStatus.WAITING_TIMER
        and lead.current_node_id == node.id
        and lead.pending_wake_at is not None
    )

    if not armed:
        if not node.wait_for:
            return Evaluation(outcome=ctx.advance(node), detail={"waited": 0})
        return Evaluation(outcome=Wait(wake_at=ctx.now + node.wait_for))

    if isinstance(event, TimerFired):
        if ctx.now < lead.pending_wake_at:
            return Evaluation(outcome=Wait(wake_at=lead.pending_wake_at))
        return Evaluation(
            outcome=ctx.advance(node),
            detail={"waited_until": lead.pending_wake_at.isoformat()},
        )

    if isinstance(event, InboundMessage) and node.interrupt_on_reply:
        return Evaluation(outcome=ctx.advance(node), detail={"interrupted_by_reply": True})

    return Evaluation(outcome=Wait(wake_at=lead.pending_wake_at))
