from leadflow.graph.evaluators.base import EvaluationContext
from leadflow.graph.nodes import TriggerNode
from leadflow.graph.outcome import Evaluation
from leadflow.schemas.events import EnrollLead


def evaluate_trigger(node: TriggerNode, ctx: EvaluationContext) -> Evaluation:
    """
    Pass the lead on to the first step.

    Source filtering happens before a context exists (see ``TriggerNode.admits``),
    so a lead seen here has already been admitted.
    """
    event = ctx.event
    if not isinstance(event, EnrollLead):
        # Already admitted; the process stopped before the first hop was saved
        return Evaluation(outcome=ctx.advance(node))
    return Evaluation(outcome=ctx.advance(node), detail={"source": event.source})
