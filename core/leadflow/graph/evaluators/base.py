"""Shared input for node evaluators."""

import random
from dataclasses import dataclass
from datetime import datetime

from leadflow.graph.edge import DEFAULT_PORT, FlowGraph
from leadflow.graph.nodes import NodeSpec
from leadflow.graph.outcome import Advance
from leadflow.llm.decision import AIDecision
from leadflow.schemas.context import LeadExecutionContext
from leadflow.schemas.events import LeadEvent


@dataclass(frozen=True)
class EvaluationContext:
    """
    Read-only view an evaluator decides from.

    ``rng`` is seeded per lead, node and generation, so replaying the same
    evaluation makes the same random choices. ``decision`` is set only for
    agent nodes, after the driver has consulted the AI service.
    """

    graph: FlowGraph
    lead: LeadExecutionContext
    event: LeadEvent
    now: datetime
    rng: random.Random
    decision: AIDecision | None = None

    def advance(self, node: NodeSpec, port: str = DEFAULT_PORT) -> Advance:
        target = self.graph.edge_target(node.id, port)
        if target is None:
            # Validation guarantees required ports; reaching here means an unwired optional port
            raise KeyError(f"{node.kind} node '{node.id}' has no edge for port '{port}'")
        return Advance(target_node_id=target, port=port)
