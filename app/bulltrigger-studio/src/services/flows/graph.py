from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import json
from typing import Any

from sqlalchemy import delete, select

from core.db import session_scope
from core.models import (
    FlowEdge,
    FlowNode,
    HANDLE_CHOICES,
    HANDLE_DEFAULT,
    NODE_TYPE_CHOICES,
    NODE_TYPE_CONDITION,
    NODE_TYPE_START,
    Strategy,
)
from services.flows.errors import ConfigurationError, StrategyNotFoundError


def parse_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


@dataclass(frozen=True)
class NodeSpec:
    id: int
    strategy_id: int
    node_type: str
    name: str
    config: dict[str, Any]
    output_variable: str | None
    enabled: bool
    required: bool | None
    order_index: int


@dataclass(frozen=True)
class EdgeSpec:
    id: int
    source_node_id: int
    source_handle: str
    target_node_id: int


@dataclass
class FlowGraph:
    strategy_id: int
    strategy_name: str
    nodes: dict[int, NodeSpec]
    edges: list[EdgeSpec]
    outgoing: dict[tuple[int, str], list[EdgeSpec]] = field(default_factory=dict)
    incoming: dict[int, list[EdgeSpec]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for edge in sorted(self.edges, key=lambda item: item.id):
            self.outgoing.setdefault(
                (edge.source_node_id, edge.source_handle), []
            ).append(edge)
            self.incoming.setdefault(edge.target_node_id, []).append(edge)

    @property
    def is_legacy(self) -> bool:
        return not self.edges

    def ordered_nodes(self) -> list[NodeSpec]:
        return sorted(self.nodes.values(), key=lambda node: (node.order_index, node.id))

    def entry_nodes(self) -> list[NodeSpec]:
        ordered = self.ordered_nodes()
        starts = [node for node in ordered if node.node_type == NODE_TYPE_START]
        if starts:
            return starts
        return [node for node in ordered if not self.incoming.get(node.id)]

    def successors(self, node_id: int, handle: str = HANDLE_DEFAULT) -> list[NodeSpec]:
        return [
            self.nodes[edge.target_node_id]
            for edge in self.outgoing.get((node_id, handle), [])
        ]

    def validate(self) -> None:
        if not self.nodes:
            raise ConfigurationError(f"Strategy {self.strategy_id} has no nodes.")
        for node in self.nodes.values():
            if node.node_type not in NODE_TYPE_CHOICES:
                raise ConfigurationError(
                    f"Node {node.id} has unknown node type '{node.node_type}'."
                )
        if not any(
            node.enabled and node.node_type != NODE_TYPE_START
            for node in self.nodes.values()
        ):
            raise ConfigurationError(
                f"Strategy {self.strategy_id} has no enabled nodes to execute."
            )
        for edge in self.edges:
            source = self.nodes.get(edge.source_node_id)
            target = self.nodes.get(edge.target_node_id)
            if source is None or target is None:
                raise ConfigurationError(
                    f"Edge {edge.id} connects a node outside strategy {self.strategy_id}."
                )
            if edge.source_handle not in HANDLE_CHOICES:
                raise ConfigurationError(
                    f"Edge {edge.id} uses unknown handle '{edge.source_handle}'."
                )
            if (
                edge.source_handle != HANDLE_DEFAULT
                and source.node_type != NODE_TYPE_CONDITION
            ):
                raise ConfigurationError(
                    f"Edge {edge.id} uses handle '{edge.source_handle}' on a "
                    f"{source.node_type} node."
                )
        if not self.is_legacy and not self.entry_nodes():
            raise ConfigurationError(
                f"Strategy {self.strategy_id} has no start or entry node."
            )
        self._check_acyclic()
        if not self.is_legacy and not any(
            node.enabled and node.node_type != NODE_TYPE_START
            for node in self.reachable_nodes()
        ):
            raise ConfigurationError(
                f"Strategy {self.strategy_id} has no executable node reachable from its entry."
            )

    def reachable_nodes(self) -> list[NodeSpec]:
        seen: set[int] = set()
        queue = deque(node.id for node in self.entry_nodes())
        while queue:
            node_id = queue.popleft()
            if node_id in seen:
                continue
            seen.add(node_id)
            for handle in HANDLE_CHOICES:
                for edge in self.outgoing.get((node_id, handle), []):
                    queue.append(edge.target_node_id)
        return [self.nodes[node_id] for node_id in sorted(seen)]

    def _check_acyclic(self) -> None:
        indegree = {node_id: 0 for node_id in self.nodes}
        for edge in self.edges:
            indegree[edge.target_node_id] += 1
        queue = deque(node_id for node_id, count in indegree.items() if count == 0)
        visited = 0
        while queue:
            node_id = queue.popleft()
            visited += 1
            for handle in HANDLE_CHOICES:
                for edge in self.outgoing.get((node_id, handle), []):
                    indegree[edge.target_node_id] -= 1
                    if indegree[edge.target_node_id] == 0:
                        queue.append(edge.target_node_id)
        if visited != len(self.nodes):
            raise ConfigurationError(
                f"Strategy {self.strategy_id} graph contains a cycle."
            )


def load_graph(strategy_id: int) -> FlowGraph:
    with session_scope() as session:
        strategy = session.get(Strategy, strategy_id)
        if strategy is None:
            raise StrategyNotFoundError(f"Strategy {strategy_id} not found.")
        nodes = (
            session.execute(select(FlowNode).where(FlowNode.strategy_id == strategy_id))
            .scalars()
            .all()
        )
        edges = (
            session.execute(
                select(FlowEdge)
                .where(FlowEdge.strategy_id == strategy_id)
                .order_by(FlowEdge.id.asc())
            )
            .scalars()
            .all()
        )
        node_specs = {
            node.id: NodeSpec(
                id=node.id,
                strategy_id=node.strategy_id,
                node_type=(node.node_type or "").strip().lower(),
                name=node.name or f"{node.node_type} #{node.id}",
                config=parse_json_object(node.config_json),
                output_variable=(node.output_variable or "").strip() or None,
                enabled=bool(node.enabled),
                required=node.required,
                order_index=int(node.order_index or 0),
            )
            for node in nodes
        }
        edge_specs = [
            EdgeSpec(
                id=edge.id,
                source_node_id=edge.source_node_id,
                source_handle=(edge.source_handle or HANDLE_DEFAULT).strip().lower(),
                target_node_id=edge.target_node_id,
            )
            for edge in edges
        ]
        return FlowGraph(
            strategy_id=strategy.id,
            strategy_name=strategy.name,
            nodes=node_specs,
            edges=edge_specs,
        )


def save_graph(
    strategy_id: int,
    nodes: list[dict[str, Any]],
    edges: list[dict[str, Any]],
) -> dict[str, int]:
    """Replace a strategy's nodes and edges with editor payloads.

    Node payloads carry a client-side ``key``; edges reference those keys via
    ``source``/``target``. Returns the mapping of client keys to node ids.
    """
    with session_scope() as session:
        strategy = session.get(Strategy, strategy_id)
        if strategy is None:
            raise StrategyNotFoundError(f"Strategy {strategy_id} not found.")
        session.execute(delete(FlowEdge).where(FlowEdge.strategy_id == strategy_id))
        session.execute(delete(FlowNode).where(FlowNode.strategy_id == strategy_id))

        ids_by_key: dict[str, int] = {}
        for index, payload in enumerate(nodes):
            key = str(payload.get("key") or index)
            config = payload.get("config") or {}
            node = FlowNode.create(
                session,
                strategy_id=strategy_id,
                node_type=str(payload.get("node_type") or "").strip().lower(),
                name=payload.get("name"),
                config_json=json.dumps(config, sort_keys=True),
                output_variable=payload.get("output_variable"),
                enabled=bool(payload.get("enabled", True)),
                required=payload.get("required"),
                order_index=int(payload.get("order_index", index)),
            )
            ids_by_key[key] = node.id

        for payload in edges:
            source_key = str(payload.get("source"))
            target_key = str(payload.get("target"))
            if source_key not in ids_by_key or target_key not in ids_by_key:
                raise ConfigurationError(
                    f"Edge {source_key} -> {target_key} references an unknown node."
                )
            FlowEdge.create(
                session,
                strategy_id=strategy_id,
                source_node_id=ids_by_key[source_key],
                source_handle=str(payload.get("handle") or HANDLE_DEFAULT),
                target_node_id=ids_by_key[target_key],
            )
    return ids_by_key
