"""Structural validation for flow graphs.

Runs at publish and load time so malformed graphs never reach a running
lead. Errors are collected rather than raised one at a time, so an editor
can show every problem at once.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import ValidationError

from leadflow.errors import GraphValidationError
from leadflow.graph.edge import DEFAULT_PORT, FlowGraph
from leadflow.graph.nodes import NodeKind, NodeSpec

logger = logging.getLogger(__name__)

INTENT_PORTS = frozenset({"interested", "not_interested", "question", "handoff"})

# Kinds that always continue through their default port
_DEFAULT_ONLY = frozenset(
    {NodeKind.TRIGGER, NodeKind.DELAY, NodeKind.ACTION, NodeKind.BROADCAST, NodeKind.AGENT}
)
# Kinds that leave the graph (or jump) without following an edge
_NO_EDGES = frozenset({NodeKind.GOTO, NodeKind.GOTO_CAMPAIGN, NodeKind.CLOSING})


@dataclass
class ValidationResult:
    """Result of validating a graph."""

    success: bool
    errors: list[str]

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


def condition_port(index: int) -> str:
    return f"condition_{index}"


def emitted_ports(node: NodeSpec) -> frozenset[str]:
    """Every port a node of this kind and configuration may exit through."""
    if node.kind in _DEFAULT_ONLY:
        return frozenset({DEFAULT_PORT})
    if node.kind == NodeKind.SPLIT:
        return frozenset(node.branches)
    if node.kind == NodeKind.LOGIC:
        conditions = {condition_port(i) for i in range(len(node.conditions))}
        return INTENT_PORTS | conditions | {DEFAULT_PORT}
    if node.kind == NodeKind.HANDOFF:
        # Optional resume point after the human hands the lead back
        return frozenset({DEFAULT_PORT})
    return frozenset()


def required_ports(node: NodeSpec) -> frozenset[str]:
    """Ports that must be wired for the node to be able to make progress."""
    if node.kind in _DEFAULT_ONLY or node.kind == NodeKind.LOGIC:
        return frozenset({DEFAULT_PORT})
    if node.kind == NodeKind.SPLIT:
        return frozenset(node.branches)
    return frozenset()


def _valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


class GraphValidator:
    """
    Validates a FlowGraph.

    Checks, in order:
    - exactly one trigger, node keys match node ids
    - edges reference existing nodes and ports the source kind emits
    - at most one edge per (source, port), required ports wired
    - per-kind configuration (goto targets, webhook URLs, agent slots)
    - goto jumps never loop among themselves
    - every node is reachable from the trigger
    """

    def validate(self, graph: FlowGraph) -> ValidationResult:
        errors: list[str] = []

        if not graph.nodes:
            return ValidationResult(success=False, errors=["Graph has no nodes"])

        for key, node in graph.nodes.items():
            if key != node.id:
                errors.append(f"Node keyed '{key}' declares id '{node.id}'")

        triggers = graph.triggers()
        if len(triggers) != 1:
            errors.append(f"Graph must have exactly one trigger node, found {len(triggers)}")
        trigger_ids = {t.id for t in triggers}

        errors.extend(self._check_edges(graph, trigger_ids))
        for node in graph.nodes.values():
            errors.extend(self._check_node(graph, node, trigger_ids))
        errors.extend(self._check_goto_cycles(graph))

        if len(triggers) == 1:
            reachable = graph.reachable_from_entry()
            for node_id in graph.nodes:
                if node_id not in reachable:
                    errors.append(f"Node '{node_id}' is unreachable from entry")

        return ValidationResult(success=not errors, errors=errors)

    def _check_edges(self, graph: FlowGraph, trigger_ids: set[str]) -> list[str]:
        errors = []
        seen: set[tuple[str, str]] = set()
        for edge in graph.edges:
            source = graph.get_node(edge.source)
            if source is None:
                errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
            elif edge.port not in emitted_ports(source):
                errors.append(
                    f"Edge '{edge.id}' leaves {source.kind} node '{source.id}' through "
                    f"port '{edge.port}', which it never emits"
                )
            if graph.get_node(edge.target) is None:
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")
            elif edge.target in trigger_ids:
                errors.append(f"Edge '{edge.id}' re-enters trigger '{edge.target}'")
            key = (edge.source, edge.port)
            if key in seen:
                errors.append(f"Node '{edge.source}' has more than one edge on port '{edge.port}'")
            seen.add(key)

        for node in graph.nodes.values():
            for port in sorted(required_ports(node)):
                if graph.edge_target(node.id, port) is None:
                    errors.append(f"{node.kind} node '{node.id}' has no edge for port '{port}'")
        return errors

    def _check_node(self, graph: FlowGraph, node: NodeSpec, trigger_ids: set[str]) -> list[str]:
        errors = []
        if node.kind == NodeKind.GOTO:
            target = node.target_node_id
            if target == node.id:
                errors.append(f"Goto '{node.id}' targets itself")
            elif graph.get_node(target) is None:
                errors.append(f"Goto '{node.id}' targets missing node '{target}'")
            elif target in trigger_ids:
                errors.append(f"Goto '{node.id}' re-enters trigger '{target}'")

        elif node.kind == NodeKind.HANDOFF:
            if node.target == "campaign" and not node.target_campaign_id:
                errors.append(f"Handoff '{node.id}' targets a campaign but names none")

        elif node.kind in (NodeKind.ACTION, NodeKind.BROADCAST):
            action = node.action
            if action.type == "webhook" and not _valid_url(action.url):
                errors.append(f"Node '{node.id}' has malformed webhook URL '{action.url}'")
            if action.type == "send_message" and not action.template.strip():
                errors.append(f"Node '{node.id}' has an empty message template")

        elif node.kind == NodeKind.AGENT:
            names = node.slot_names
            if len(set(names)) != len(names):
                errors.append(f"Agent '{node.id}' declares duplicate slots")
            minimum = node.success_criteria.min_slots_filled
            if minimum is not None and minimum > len(names):
                errors.append(
                    f"Agent '{node.id}' requires {minimum} slots but declares only {len(names)}"
                )

        if node.kind in _NO_EDGES and graph.get_outgoing_edges(node.id):
            errors.append(f"{node.kind} node '{node.id}' must not have outgoing edges")
        return errors

    def _check_goto_cycles(self, graph: FlowGraph) -> list[str]:
        """A goto that lands on a goto chain leading back to itself never settles."""
        errors = []
        for node in graph.nodes.values():
            if node.kind != NodeKind.GOTO:
                continue
            seen = {node.id}
            current = graph.get_node(node.target_node_id)
            while current is not None and current.kind == NodeKind.GOTO:
                if current.id in seen:
                    errors.append(f"Goto '{node.id}' is part of a goto cycle")
                    break
                seen.add(current.id)
                current = graph.get_node(current.target_node_id)
        return errors


_validator = GraphValidator()


def validate_graph(graph: FlowGraph) -> ValidationResult:
    return _validator.validate(graph)


def ensure_valid(graph: FlowGraph) -> FlowGraph:
    """Return the graph unchanged, or raise GraphValidationError listing every problem."""
    result = validate_graph(graph)
    if not result.success:
        raise GraphValidationError(result.errors, campaign_id=graph.campaign_id)
    return graph


def parse_graph(data: dict[str, Any]) -> FlowGraph:
    """Build and validate a graph from its JSON document."""
    try:
        graph = FlowGraph.model_validate(data)
    except ValidationError as e:
        errors = []
        for err in e.errors():
            field_path = ".".join(str(loc) for loc in err["loc"]) or "<root>"
            errors.append(f"{field_path}: {err['msg']}")
        raise GraphValidationError(errors, campaign_id=data.get("campaign_id")) from e
    return ensure_valid(graph)


def load_graph_file(path: str | Path) -> FlowGraph:
    """Load and validate a graph document from disk."""
    with open(path, encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise GraphValidationError([f"{path}: not valid JSON ({e})"]) from e
    logger.debug(f"Loaded graph document {path}")
    return parse_graph(data)
