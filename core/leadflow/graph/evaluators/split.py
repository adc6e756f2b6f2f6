from leadflow.graph.evaluators.base import EvaluationContext
from leadflow.graph.nodes import SplitNode
from leadflow.graph.outcome import Evaluation

SPLIT_VARIABLE_PREFIX = "__split__"


def split_variable(node_id: str) -> str:
    return f"{SPLIT_VARIABLE_PREFIX}{node_id}"


def evaluate_split(node: SplitNode, ctx: EvaluationContext) -> Evaluation:
    """
    Roll once per visit: a draw in [0, 100) below ``variant_a_percent`` takes
    the first branch. The draw is stored with the generation it was made
    under and reused if the same visit is evaluated again.
    """
    key = split_variable(node.id)
    stored = ctx.lead.variables.get(key)
    if isinstance(stored, dict) and stored.get("generation") == ctx.lead.generation:
        roll = float(stored["roll"])
    else:
        roll = ctx.rng.random() * 100

    branch_a, branch_b = node.branches
    port = branch_a if roll < node.variant_a_percent else branch_b
    return Evaluation(
        outcome=ctx.advance(node, port),
        variables={key: {"generation": ctx.lead.generation, "roll": roll, "branch": port}},
        detail={"roll": round(roll, 4), "variant_a_percent": node.variant_a_percent},
    )
