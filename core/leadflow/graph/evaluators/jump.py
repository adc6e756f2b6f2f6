from leadflow.graph.evaluators.base import EvaluationContext
from leadflow.graph.nodes import GotoCampaignNode, GotoNode
from leadflow.graph.outcome import Advance, Evaluation, TransferCampaign

GOTO_PORT = "goto"


def evaluate_goto(node: GotoNode, ctx: EvaluationContext) -> Evaluation:
    """Jump within the graph without following an edge."""
    return Evaluation(outcome=Advance(target_node_id=node.target_node_id, port=GOTO_PORT))


def evaluate_goto_campaign(node: GotoCampaignNode, ctx: EvaluationContext) -> Evaluation:
    """Transfer the lead, carrying its variables, to another campaign."""
    return Evaluation(
        outcome=TransferCampaign(
            campaign_id=node.target_campaign_id, carry_variables=True, reason=node.reason
        )
    )
