"""
Edge Protocol - how flow nodes connect.

An edge leaves a node through a named port and lands on a target node in
the same graph. Each node kind emits a fixed set of ports (see
``leadflow.graph.validator.emitted_ports``); routing never inspects edge
payloads, only ``(source, port)``.

A FlowGraph is one immutable, versioned snapshot of a campaign. Leads are
pinned to the version they enrolled on.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr, field_validator

from leadflow.graph.nodes import NodeKind, NodeSpec

DEFAULT_PORT = "default"


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Unconditional continuation
        EdgeSpec(source="wait-1d", target="followup")

        # A/B split branch
        EdgeSpec(source="ab", port="variant_b", target="short-pitch")
    """

    source: str = Field(description="Source node ID")
    port: str = Field(default=DEFAULT_PORT, description="Named exit of the source node")
    target: str = Field(description="Target node ID")
    description: str = ""

    model_config = {"frozen": True, "extra": "ignore"}

    @property
    def id(self) -> str:
        return f"{self.source}:{self.port}->{self.target}"


class FlowGraph(BaseModel):
    """
    Complete, immutable snapshot of one campaign's flow.

    ``nodes`` accepts either a mapping of node_id to node or a plain list of
    nodes (the editor export format); lists are keyed by each node's id.
    """

    campaign_id: str = Field(min_length=1)
    version: int = Field(default=0, ge=0, description="Assigned on publish")
    nodes: dict[str, NodeSpec] = Field(default_factory=dict)
    edges: tuple[EdgeSpec, ...] = ()
    description: str = ""
    published_at: datetime | None = None

    model_config = {"frozen": True, "extra": "allow"}

    _outgoing: dict[tuple[str, str], str] = PrivateAttr(default_factory=dict)

    @field_validator("nodes", mode="before")
    @classmethod
    def _key_node_list(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            keyed: dict[str, Any] = {}
            for raw in value:
                node_id = raw.get("id") if isinstance(raw, dict) else getattr(raw, "id", None)
                if node_id in keyed:
                    raise ValueError(f"duplicate node id '{node_id}'")
                keyed[node_id] = raw
            return keyed
        return value

    def model_post_init(self, __context: Any) -> None:
        # First edge wins for a duplicated (source, port); validation reports the duplicate
        for edge in self.edges:
            self._outgoing.setdefault((edge.source, edge.port), edge.target)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> NodeSpec | None:
        return self.nodes.get(node_id)

    def require_node(self, node_id: str) -> NodeSpec:
        node = self.nodes.get(node_id)
        if node is None:
            raise KeyError(f"Node '{node_id}' not in campaign '{self.campaign_id}' v{self.version}")
        return node

    def edge_target(self, node_id: str, port: str = DEFAULT_PORT) -> str | None:
        """Target of the edge leaving ``node_id`` through ``port``, if any."""
        return self._outgoing.get((node_id, port))

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        return [e for e in self.edges if e.target == node_id]

    def triggers(self) -> list[NodeSpec]:
        return [n for n in self.nodes.values() if n.kind == NodeKind.TRIGGER]

    @property
    def entry_node_id(self) -> str:
        """The single trigger node. Only meaningful on a validated graph."""
        triggers = self.triggers()
        if len(triggers) != 1:
            raise ValueError(
                f"Campaign '{self.campaign_id}' has {len(triggers)} trigger nodes, expected 1"
            )
        return triggers[0].id

    def successors(self, node_id: str) -> list[str]:
        """Nodes reachable in one step, including goto jumps."""
        targets = [e.target for e in self.get_outgoing_edges(node_id)]
        node = self.nodes.get(node_id)
        if node is not None and node.kind == NodeKind.GOTO:
            targets.append(node.target_node_id)
        return targets

    def reachable_from_entry(self) -> set[str]:
        reachable: set[str] = set()
        to_visit = [t.id for t in self.triggers()]
        while to_visit:
            current = to_visit.pop()
            if current in reachable or current not in self.nodes:
                continue
            reachable.add(current)
            to_visit.extend(self.successors(current))
        return reachable

    def referenced_campaigns(self) -> set[str]:
        """Campaigns this graph can transfer leads into."""
        refs = set()
        for node in self.nodes.values():
            if node.kind == NodeKind.GOTO_CAMPAIGN:
                refs.add(node.target_campaign_id)
            elif node.kind == NodeKind.HANDOFF and node.target_campaign_id:
                refs.add(node.target_campaign_id)
        return refs

    def stamped(self, version: int) -> "FlowGraph":
        """Copy of this graph carrying its published version."""
        return self.model_copy(update={"version": version, "published_at": datetime.now(UTC)})
