"""Flow graph structures: nodes, edges, validation and outcomes."""

from leadflow.graph.edge import DEFAULT_PORT, EdgeSpec, FlowGraph
from leadflow.graph.nodes import FinalStatus, NodeKind, NodeSpec
from leadflow.graph.validator import (
    GraphValidator,
    ValidationResult,
    ensure_valid,
    load_graph_file,
    parse_graph,
    validate_graph,
)

__all__ = [
    "DEFAULT_PORT",
    "EdgeSpec",
    "FlowGraph",
    "FinalStatus",
    "NodeKind",
    "NodeSpec",
    "GraphValidator",
    "ValidationResult",
    "ensure_valid",
    "load_graph_file",
    "parse_graph",
    "validate_graph",
]
