"""Tests for branch routing, fan-out expansion and join accumulation."""

import pytest

from flow_orchestra.graph import build_graph
from flow_orchestra.routing import (
    JoinAccumulator,
    branch_tag,
    expand_fan_out,
    flatten_payloads,
    is_fan_out,
    route_branch,
)


def _graph(edges, extra_nodes=()):
    ids = {"s"} | {e["target"] for e in edges} | set(extra_nodes)
    return build_graph([{"id": i} for i in sorted(ids)], [{"source": "s", **e} for e in edges])


def test_branch_tag():
    assert branch_tag({"__branch": "Yes"}) == "Yes"
    assert branch_tag({"__branch": True}) == "true"
    assert branch_tag({"__branch": False}) == "false"
    assert branch_tag({"__branch": 2}) == "2"
    assert branch_tag({"__branch": None}) is None
    assert branch_tag({"value": 1}) is None
    assert branch_tag(["__branch"]) is None


def test_labeled_match_is_case_insensitive():
    graph = _graph([{"target": "y", "label": "Approved"}, {"target": "n", "label": "rejected"}])
    assert route_branch(graph, "s", "approved") == ["y"]
    assert route_branch(graph, "s", "REJECTED") == ["n"]


def test_all_matching_labels_receive_output():
    graph = _graph([
        {"target": "a", "label": "high"},
        {"target": "b", "label": "low"},
        {"target": "c", "label": "High"},
    ])
    assert route_branch(graph, "s", "high") == ["a", "c"]


def test_true_false_positional_fallback():
    """Unlabeled edges: first is the true branch, second the false branch."""
    graph = _graph([{"target": "t"}, {"target": "f"}])
    assert route_branch(graph, "s", "true") == ["t"]
    assert route_branch(graph, "s", "false") == ["f"]


def test_positional_fallback_skips_labeled_edges():
    graph = _graph([{"target": "x", "label": "other"}, {"target": "t"}, {"target": "f"}])
    assert route_branch(graph, "s", "true") == ["t"]
    assert route_branch(graph, "s", "false") == ["f"]


def test_missing_true_false_slot_falls_back_to_first_neighbor():
    graph = _graph([{"target": "t"}])
    assert route_branch(graph, "s", "false") == ["t"]

    graph = _graph([{"target": "y", "label": "yes"}, {"target": "n", "label": "no"}])
    assert route_branch(graph, "s", "true") == ["y"]
    assert route_branch(graph, "s", "false") == ["y"]


def test_integer_tag_selects_position():
    graph = _graph([{"target": "a"}, {"target": "b"}, {"target": "c"}])
    assert route_branch(graph, "s", "0") == ["a"]
    assert route_branch(graph, "s", "2") == ["c"]
    # Out of range falls back to the first neighbor
    assert route_branch(graph, "s", "7") == ["a"]


def test_integer_tag_counts_labeled_edges():
    graph = _graph([
        {"target": "a", "label": "x"},
        {"target": "b", "label": "y"},
        {"target": "c", "label": "z"},
    ])
    assert route_branch(graph, "s", "2") == ["c"]
    assert route_branch(graph, "s", "1") == ["b"]


@pytest.mark.parametrize("tag", ["²", "-1", "1.5"])
def test_unusable_index_falls_back_to_first_neighbor(tag):
    graph = _graph([{"target": "a"}, {"target": "b"}])
    assert route_branch(graph, "s", tag) == ["a"]


def test_unmatched_tag_falls_back_to_first_neighbor():
    graph = _graph([{"target": "a", "label": "yes"}, {"target": "b", "label": "no"}])
    assert route_branch(graph, "s", "maybe") == ["a"]


def test_no_neighbors_routes_nowhere():
    graph = build_graph([{"id": "s"}], [])
    assert route_branch(graph, "s", "true") == []


def test_is_fan_out():
    assert is_fan_out({"__fanOut": True, "items": [1]})
    assert is_fan_out({"__fanOut": True, "items": []})
    assert not is_fan_out({"__fanOut": True, "items": "abc"})
    assert not is_fan_out({"__fanOut": "yes", "items": [1]})
    assert not is_fan_out({"items": [1]})
    assert not is_fan_out([1, 2])


def test_expand_fan_out_is_neighbor_major():
    assert expand_fan_out(["a", "b"], [1, 2]) == [("a", 1), ("a", 2), ("b", 1), ("b", 2)]
    assert expand_fan_out(["a", "b"], []) == []
    assert expand_fan_out([], [1, 2]) == []


def test_flatten_payloads_one_level():
    assert flatten_payloads([[1, 2], 3, {"k": 4}, [[5]]]) == [1, 2, 3, {"k": 4}, [5]]
    assert flatten_payloads([]) == []


class TestJoinAccumulator:
    """Join release thresholds."""

    @pytest.fixture
    def graph(self):
        # a -> m, b -> m, a -> m (parallel edge)
        return build_graph(
            [{"id": "a"}, {"id": "b"}, {"id": "m", "subtype": "merge"}],
            [{"source": "a", "target": "m"}, {"source": "b", "target": "m"}, {"source": "a", "target": "m"}],
        )

    def test_distinct_sources_waits_for_every_predecessor(self, graph):
        joins = JoinAccumulator(graph, "distinct_sources")

        assert joins.expected("m") == 2
        assert joins.offer("m", "a1", "a") is None
        assert joins.offer("m", "a2", "a") is None
        assert joins.received("m") == 2
        assert joins.offer("m", ["b1", "b2"], "b") == ["a1", "a2", "b1", "b2"]

        # Released joins start over
        assert joins.received("m") == 0
        assert joins.pending() == {}

    def test_in_degree_counts_payloads(self, graph):
        joins = JoinAccumulator(graph, "in_degree")

        assert joins.expected("m") == 3
        assert joins.offer("m", "a1", "a") is None
        assert joins.offer("m", "a2", "a") is None
        assert joins.offer("m", "a3", "a") == ["a1", "a2", "a3"]

    def test_pending_reports_missing_sources(self, graph):
        joins = JoinAccumulator(graph)
        joins.offer("m", "a1", "a")

        assert joins.pending() == {"m": {"received": 1, "sources": ["a"], "missing": ["b"]}}

    def test_join_without_predecessors_releases_immediately(self):
        graph = build_graph([{"id": "m", "subtype": "merge"}], [])
        assert JoinAccumulator(graph).offer("m", {"x": 1}, None) == [{"x": 1}]
        assert JoinAccumulator(graph, "in_degree").offer("m", {"x": 1}, None) == [{"x": 1}]
