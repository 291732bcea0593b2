"""Output routing: branch selection, fan-out expansion and join accumulation.

Runners signal routing through plain keys on their output payload:

- ``{"__branch": tag, ...}`` routes the output to the edges matching ``tag``
- ``{"__fanOut": True, "items": [...]}`` delivers every item to every neighbor

Any other output is propagated unchanged to all outgoing neighbors.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence, Set, Tuple

from .graph import WorkGraph

BRANCH_KEY = "__branch"
FAN_OUT_KEY = "__fanOut"
ITEMS_KEY = "items"

JoinMode = Literal["distinct_sources", "in_degree"]


def branch_tag(output: Any) -> Optional[str]:
    """Return the branch tag of an output, or None when it carries none."""
    if isinstance(output, dict) and output.get(BRANCH_KEY) is not None:
        tag = output[BRANCH_KEY]
        if isinstance(tag, bool):
            return "true" if tag else "false"
        return str(tag)
    return None


def route_branch(graph: WorkGraph, node_id: str, tag: str) -> List[str]:
    """Select the targets that receive an output tagged ``tag``.

    Labeled edges matching the tag (case-insensitive) all receive it. Without
    a label match, ``"true"``/``"false"`` pick the first/second unlabeled
    neighbor and a non-negative integer picks that position among all
    neighbors. When none of these resolves, the output goes to the first
    neighbor. An empty list means the node has no outgoing edges.
    """
    labeled = graph.labeled_neighbors(node_id)
    wanted = tag.lower()
    matched = [target for target, label in labeled if label is not None and label.lower() == wanted]
    if matched:
        return matched

    neighbors = graph.neighbors(node_id)
    unlabeled = [target for target, label in labeled if not label]
    if tag == "true" and unlabeled:
        return [unlabeled[0]]
    if tag == "false" and len(unlabeled) > 1:
        return [unlabeled[1]]
    index = _parse_index(tag)
    if index is not None and index < len(neighbors):
        return [neighbors[index]]
    return [neighbors[0]] if neighbors else []


def _parse_index(tag: str) -> Optional[int]:
    try:
        index = int(tag)
    except ValueError:
        return None
    return index if index >= 0 else None


def is_fan_out(output: Any) -> bool:
    return isinstance(output, dict) and output.get(FAN_OUT_KEY) is True and isinstance(output.get(ITEMS_KEY), list)


def expand_fan_out(neighbors: Sequence[str], items: Sequence[Any]) -> List[Tuple[str, Any]]:
    """One (neighbor, item) pair per neighbor per item, neighbor-major."""
    return [(neighbor, item) for neighbor in neighbors for item in items]


def flatten_payloads(payloads: Sequence[Any]) -> List[Any]:
    """Concatenate payloads one level deep: lists are spliced, others appended."""
    combined: List[Any] = []
    for payload in payloads:
        if isinstance(payload, list):
            combined.extend(payload)
        else:
            combined.append(payload)
    return combined


@dataclass
class _PendingJoin:
    payloads: List[Any] = field(default_factory=list)
    sources: Set[str] = field(default_factory=set)


class JoinAccumulator:
    """Buffers inputs of "wait for all" nodes until every predecessor delivered.

    In ``distinct_sources`` mode a join releases once each distinct upstream
    node has delivered at least once. In ``in_degree`` mode it releases once it
    holds as many payloads as it has incoming edges, regardless of who sent them.
    """

    def __init__(self, graph: WorkGraph, mode: JoinMode = "distinct_sources") -> None:
        self._graph = graph
        self._mode = mode
        self._pending: Dict[str, _PendingJoin] = {}

    def offer(self, node_id: str, payload: Any, source: Optional[str]) -> Optional[List[Any]]:
        """Buffer ``payload`` for ``node_id``; return the combined payload on release."""
        entry = self._pending.setdefault(node_id, _PendingJoin())
        entry.payloads.append(payload)
        if source is not None:
            entry.sources.add(source)

        if not self._is_ready(node_id, entry):
            return None
        del self._pending[node_id]
        return flatten_payloads(entry.payloads)

    def _is_ready(self, node_id: str, entry: _PendingJoin) -> bool:
        if self._mode == "in_degree":
            return len(entry.payloads) >= max(self._graph.in_degree.get(node_id, 0), 1)
        expected = self._graph.incoming_sources.get(node_id, frozenset())
        return expected <= entry.sources

    def expected(self, node_id: str) -> int:
        if self._mode == "in_degree":
            return max(self._graph.in_degree.get(node_id, 0), 1)
        return len(self._graph.incoming_sources.get(node_id, frozenset()))

    def received(self, node_id: str) -> int:
        entry = self._pending.get(node_id)
        return len(entry.payloads) if entry else 0

    def pending(self) -> Dict[str, Dict[str, Any]]:
        """Joins still waiting, with what arrived and what is missing."""
        return {
            node_id: {
                "received": len(entry.payloads),
                "sources": sorted(entry.sources),
                "missing": sorted(self._graph.incoming_sources.get(node_id, frozenset()) - entry.sources),
            }
            for node_id, entry in self._pending.items()
        }
