"""Graph specification and adjacency construction.

Defines the node and edge models accepted by the engine and builds the
read-only adjacency views used by a run. Nodes and edges may be given in the
flat form (``{"id", "kind", "subtype", "config"}``) or in the editor form
(``{"id", "type", "data": {"subtype", "config", "options", "errorHandling"}}``).
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

JOIN_SUBTYPE = "merge"
JOIN_STRATEGY = "all"


class ErrorPolicy(BaseModel):
    """Per-node failure policy."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    max_retries: Optional[int] = Field(default=None, ge=0, alias="maxRetries",
                                       description="Retries after the first attempt; None uses the run default")
    continue_on_fail: bool = Field(default=False, alias="continueOnFail")

    @model_validator(mode="before")
    @classmethod
    def accept_retries_alias(cls, data: Any) -> Any:
        """Editor payloads spell the bound ``retries``."""
        if isinstance(data, dict) and "retries" in data and "maxRetries" not in data and "max_retries" not in data:
            data = {**data, "maxRetries": data["retries"]}
        return data


class NodeSpec(BaseModel):
    """One unit of work in the graph."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str = Field(..., min_length=1)
    kind: str = Field(default="action", description="trigger, action, ai or utility")
    subtype: Optional[str] = Field(default=None, description="Selects the runner")
    config: dict[str, Any] = Field(default_factory=dict, description="Opaque runner configuration")
    options: dict[str, Any] = Field(default_factory=dict)
    error_policy: ErrorPolicy = Field(default_factory=ErrorPolicy, alias="errorPolicy")
    merge_strategy: Optional[str] = Field(default=None, alias="mergeStrategy")

    @model_validator(mode="before")
    @classmethod
    def unwrap_editor_shape(cls, data: Any) -> Any:
        """Lift ``type``/``data.*`` from the editor node shape."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "kind" not in data and "type" in data:
            data["kind"] = data.pop("type")
        inner = data.pop("data", None)
        if isinstance(inner, dict):
            for key in ("subtype", "config", "options", "mergeStrategy"):
                if key in inner and key not in data:
                    data[key] = inner[key]
            policy = inner.get("errorPolicy") or inner.get("errorHandling")
            if policy is not None and "errorPolicy" not in data and "error_policy" not in data:
                data["errorPolicy"] = policy
        if data.get("config") is None:
            data["config"] = {}
        if data.get("options") is None:
            data["options"] = {}
        options = data["options"]
        if "errorPolicy" not in data and "error_policy" not in data and isinstance(options, dict):
            lifted = {k: options[k] for k in ("retries", "continueOnFail") if k in options}
            if lifted:
                data["errorPolicy"] = lifted
        return data

    @property
    def is_trigger(self) -> bool:
        return self.kind == "trigger"

    @property
    def is_join(self) -> bool:
        """Whether the node waits for all predecessors before running."""
        if self.subtype == JOIN_SUBTYPE:
            return True
        strategy = self.merge_strategy or self.options.get("mergeStrategy") or self.config.get("mergeStrategy")
        return strategy == JOIN_STRATEGY


class EdgeSpec(BaseModel):
    """A directed dependency, optionally labeled for branch routing."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    source: str
    target: str
    label: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def lift_data_label(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("label"):
            inner = data.get("data")
            if isinstance(inner, dict) and inner.get("label"):
                data = {**data, "label": inner["label"]}
        if isinstance(data, dict) and data.get("label") is not None:
            data = {**data, "label": str(data["label"])}
        return data


def coerce_node(node: NodeSpec | Mapping[str, Any]) -> NodeSpec:
    if isinstance(node, NodeSpec):
        return node
    try:
        return NodeSpec.model_validate(node)
    except PydanticValidationError as e:
        node_id = node.get("id") if isinstance(node, Mapping) else None
        raise ValidationError(f"Invalid node definition: {e}", node_id=node_id) from e


def coerce_edge(edge: EdgeSpec | Mapping[str, Any]) -> EdgeSpec:
    if isinstance(edge, EdgeSpec):
        return edge
    try:
        return EdgeSpec.model_validate(edge)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid edge definition: {e}") from e


def coerce_nodes(nodes: Iterable[NodeSpec | Mapping[str, Any]]) -> list[NodeSpec]:
    return [coerce_node(n) for n in nodes]


def coerce_edges(edges: Iterable[EdgeSpec | Mapping[str, Any]] | None) -> list[EdgeSpec]:
    return [coerce_edge(e) for e in (edges or [])]


@dataclass(frozen=True)
class WorkGraph:
    """Adjacency views derived once per run. Read-only."""

    nodes: Mapping[str, NodeSpec]
    out_adjacency: Mapping[str, tuple[str, ...]]
    out_adjacency_with_label: Mapping[str, tuple[tuple[str, Optional[str]], ...]]
    in_degree: Mapping[str, int]
    incoming_sources: Mapping[str, frozenset[str]]

    def neighbors(self, node_id: str) -> tuple[str, ...]:
        return self.out_adjacency.get(node_id, ())

    def labeled_neighbors(self, node_id: str) -> tuple[tuple[str, Optional[str]], ...]:
        return self.out_adjacency_with_label.get(node_id, ())

    def find_cycle(self) -> Optional[list[str]]:
        """Return one cycle as a list of node ids, or None for a DAG.

        The depth-first walk keeps an explicit stack of neighbor iterators, so
        chain length is not bounded by the interpreter's recursion limit.
        """
        visited: set[str] = set()
        for root in self.nodes:
            if root in visited:
                continue
            visited.add(root)
            path = [root]
            on_path = {root}
            pending = [iter(self.neighbors(root))]
            while pending:
                for neighbor in pending[-1]:
                    if neighbor in on_path:
                        return path[path.index(neighbor):] + [neighbor]
                    if neighbor not in visited:
                        visited.add(neighbor)
                        path.append(neighbor)
                        on_path.add(neighbor)
                        pending.append(iter(self.neighbors(neighbor)))
                        break
                else:
                    pending.pop()
                    on_path.discard(path.pop())
        return None

    def validate_dag(self) -> None:
        """Validate that the graph is a DAG (no cycles).

        Raises:
            ValidationError: If a cycle is detected in the graph.
        """
        cycle = self.find_cycle()
        if cycle:
            raise ValidationError(f"Cycle detected: {' -> '.join(cycle)}", node_id=cycle[0])

    def topological_order(self) -> list[str]:
        """Return node ids in topological order (Kahn's algorithm).

        Raises:
            ValidationError: If the graph contains cycles.
        """
        remaining = dict(self.in_degree)
        queue = deque(node_id for node_id, degree in remaining.items() if degree == 0)
        result = []

        while queue:
            node_id = queue.popleft()
            result.append(node_id)
            for neighbor in self.neighbors(node_id):
                remaining[neighbor] -= 1
                if remaining[neighbor] == 0:
                    queue.append(neighbor)

        if len(result) != len(self.nodes):
            self.validate_dag()
            raise ValidationError("Graph contains cycles")
        return result


def build_graph(nodes: Iterable[NodeSpec | Mapping[str, Any]],
                edges: Iterable[EdgeSpec | Mapping[str, Any]] | None) -> WorkGraph:
    """Build the adjacency views for a run.

    Args:
        nodes: Node specifications; ids must be unique.
        edges: Edge specifications referencing existing node ids.

    Returns:
        A read-only WorkGraph.

    Raises:
        ValidationError: On an empty node list, duplicate ids, or dangling edges.
    """
    node_list = coerce_nodes(nodes)
    edge_list = coerce_edges(edges)
    if not node_list:
        raise ValidationError("Workflow has no nodes")

    by_id: dict[str, NodeSpec] = {}
    for node in node_list:
        if node.id in by_id:
            raise ValidationError(f"Duplicate node id: {node.id}", node_id=node.id)
        by_id[node.id] = node

    out: dict[str, list[str]] = {node_id: [] for node_id in by_id}
    out_labeled: dict[str, list[tuple[str, Optional[str]]]] = {node_id: [] for node_id in by_id}
    in_degree: dict[str, int] = {node_id: 0 for node_id in by_id}
    incoming: dict[str, set[str]] = {node_id: set() for node_id in by_id}

    for edge in edge_list:
        if edge.source not in by_id:
            raise ValidationError(f"Edge from unknown node: {edge.source}", node_id=edge.source)
        if edge.target not in by_id:
            raise ValidationError(f"Edge to unknown node: {edge.target}", node_id=edge.target)
        out[edge.source].append(edge.target)
        out_labeled[edge.source].append((edge.target, edge.label))
        in_degree[edge.target] += 1
        incoming[edge.target].add(edge.source)

    return WorkGraph(
        nodes=MappingProxyType(by_id),
        out_adjacency=MappingProxyType({k: tuple(v) for k, v in out.items()}),
        out_adjacency_with_label=MappingProxyType({k: tuple(v) for k, v in out_labeled.items()}),
        in_degree=MappingProxyType(in_degree),
        incoming_sources=MappingProxyType({k: frozenset(v) for k, v in incoming.items()}),
    )
