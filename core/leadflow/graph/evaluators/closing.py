from leadflow.graph.evaluators.base import EvaluationContext
from leadflow.graph.nodes import ClosingNode
from leadflow.graph.outcome import Evaluation, Terminate


def evaluate_closing(node: ClosingNode, ctx: EvaluationContext) -> Evaluation:
    return Evaluation(
        outcome=Terminate(
            final_status=node.final_status,
            clear_variables=node.clear_variables,
            reason=node.label or f"closed at '{node.id}'",
        )
    )
