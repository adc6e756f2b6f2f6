"""
Node evaluators.

One pure function per node kind: ``(node, EvaluationContext) -> Evaluation``.
The table below must cover every NodeKind; a missing kind fails at import.
"""

from collections.abc import Callable

from leadflow.graph.evaluators.action import evaluate_action, evaluate_broadcast
from leadflow.graph.evaluators.agent import evaluate_agent
from leadflow.graph.evaluators.base import EvaluationContext
from leadflow.graph.evaluators.closing import evaluate_closing
from leadflow.graph.evaluators.delay import evaluate_delay
from leadflow.graph.evaluators.handoff import evaluate_handoff
from leadflow.graph.evaluators.jump import evaluate_goto, evaluate_goto_campaign
from leadflow.graph.evaluators.logic import evaluate_logic
from leadflow.graph.evaluators.split import evaluate_split
from leadflow.graph.evaluators.trigger import evaluate_trigger
from leadflow.graph.nodes import NodeKind, NodeSpec
from leadflow.graph.outcome import Evaluation

Evaluator = Callable[[NodeSpec, EvaluationContext], Evaluation]

EVALUATORS: dict[NodeKind, Evaluator] = {
    NodeKind.TRIGGER: evaluate_trigger,
    NodeKind.DELAY: evaluate_delay,
    NodeKind.SPLIT: evaluate_split,
    NodeKind.ACTION: evaluate_action,
    NodeKind.BROADCAST: evaluate_broadcast,
    NodeKind.LOGIC: evaluate_logic,
    NodeKind.GOTO: evaluate_goto,
    NodeKind.GOTO_CAMPAIGN: evaluate_goto_campaign,
    NodeKind.HANDOFF: evaluate_handoff,
    NodeKind.CLOSING: evaluate_closing,
    NodeKind.AGENT: evaluate_agent,
}

_missing = set(NodeKind) - set(EVALUATORS)
if _missing:
    raise RuntimeError(f"No evaluator registered for node kinds: {sorted(_missing)}")


def evaluate(node: NodeSpec, ctx: EvaluationContext) -> Evaluation:
    """Dispatch to the evaluator for ``node.kind``."""
    return EVALUATORS[NodeKind(node.kind)](node, ctx)


__all__ = ["EVALUATORS", "EvaluationContext", "Evaluator", "evaluate"]
