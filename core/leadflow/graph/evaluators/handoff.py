from leadflow.graph.edge import DEFAULT_PORT
from leadflow.graph.evaluators.base import EvaluationContext
from leadflow.graph.nodes import HandoffNode, HandoffTarget
from leadflow.graph.outcome import Escalate, Evaluation


def evaluate_handoff(node: HandoffNode, ctx: EvaluationContext) -> Evaluation:
    """
    Escalate to a human, or to another campaign. A wired ``default`` port is
    where the lead resumes when the operator hands it back.
    """
    if node.target == HandoffTarget.CAMPAIGN:
        return Evaluation(outcome=Escalate(reason=node.reason, campaign_id=node.target_campaign_id))
    return Evaluation(
        outcome=Escalate(
            reason=node.reason,
            resume_node_id=ctx.graph.edge_target(node.id, DEFAULT_PORT),
            summarize=node.enable_summary,
        )
    )
