"""Graph traversal tests for CodeGraph Lite.

Tests:
- Bounded BFS (depth, node cap, filters, timeout) and its statistics
- Pre-configured call, dependency and inheritance traversals
- Community detection fallback with degree centrality
- Frequent triple mining and node ranking
"""

import pytest

from codegraph_lite.db.graph_protocol import PropertyFilter
from codegraph_lite.errors import AlgorithmUnavailable, InvalidArgumentError
from codegraph_lite.schema import (
    ClassNode,
    ConceptNode,
    FileNode,
    FunctionNode,
    NodeType,
    Relationship,
    RelationType,
)
from codegraph_lite.traversal import (
    GraphTraversal,
    TraversalOptions,
    connected_components,
    degree_centrality,
)


@pytest.fixture
def code(store):
    """Two files; f1 -> f2 -> f3 call chain across them."""
    nodes = {
        "app": FileNode(name="app.py", path="app.py"),
        "lib": FileNode(name="lib.py", path="lib.py"),
        "f1": FunctionNode(name="main", complexity=1),
        "f2": FunctionNode(name="run", complexity=4),
        "f3": FunctionNode(name="helper", complexity=2),
    }
    rels = [
        Relationship(nodes["app"].id, nodes["f1"].id, RelationType.CONTAINS),
        Relationship(nodes["app"].id, nodes["f2"].id, RelationType.CONTAINS),
        Relationship(nodes["lib"].id, nodes["f3"].id, RelationType.CONTAINS),
        Relationship(nodes["f1"].id, nodes["f2"].id, RelationType.CALLS),
        Relationship(nodes["f2"].id, nodes["f3"].id, RelationType.CALLS),
        Relationship(nodes["app"].id, nodes["lib"].id, RelationType.IMPORTS),
    ]
    store.create_subgraph(list(nodes.values()), rels)
    return {key: node.id for key, node in nodes.items()}


@pytest.fixture
def traversal(store):
    return GraphTraversal(store)


class TestTraverse:
    def test_depth_bound(self, traversal, code):
        result = traversal.traverse(TraversalOptions(
            start_nodes=[code["app"]], relation_types=[RelationType.CONTAINS], max_depth=1,
        ))

        assert set(result.nodes) == {code["app"], code["f1"], code["f2"]}
        assert len(result.edges) == 2
        assert [p.length for p in result.paths] == [1, 1]
        assert result.statistics["max_depth_reached"] == 1
        assert result.statistics["average_path_length"] == 1.0
        assert result.statistics["timed_out"] is False

    def test_node_cap(self, traversal, code):
        result = traversal.traverse(TraversalOptions(start_nodes=[code["app"]], max_nodes=2))
        assert len(result.nodes) == 2
        assert result.statistics["nodes_visited"] == 2

    def test_zero_depth_returns_start_only(self, traversal, code):
        result = traversal.traverse(TraversalOptions(start_nodes=[code["f1"]], max_depth=0))
        assert list(result.nodes) == [code["f1"]]
        assert result.edges == []

    def test_missing_and_repeated_starts(self, traversal, code):
        result = traversal.traverse(TraversalOptions(
            start_nodes=["missing", code["f3"], code["f3"]], max_depth=0,
        ))
        assert list(result.nodes) == [code["f3"]]

    def test_filters_applied_to_admitted_nodes(self, traversal, code):
        result = traversal.traverse(TraversalOptions(
            start_nodes=[code["app"]],
            node_types=[NodeType.FUNCTION],
            filters=[PropertyFilter("complexity", "gt", 2)],
            max_depth=1,
        ))
        assert set(result.nodes) == {code["app"], code["f2"]}

    def test_invalid_arguments(self, traversal, code):
        with pytest.raises(InvalidArgumentError):
            traversal.traverse(TraversalOptions(start_nodes=[code["app"]], direction="up"))
        with pytest.raises(InvalidArgumentError):
            traversal.traverse(TraversalOptions(start_nodes=[code["app"]], max_depth=-1))

    def test_timeout_reported(self, traversal, code):
        result = traversal.traverse(TraversalOptions(start_nodes=[code["app"]], timeout=1e-9))
        assert result.statistics["timed_out"] is True


class TestPresetTraversals:
    def test_call_graph(self, traversal, code):
        result = traversal.get_call_graph(code["f1"])
        assert set(result.nodes) == {code["f1"], code["f2"], code["f3"]}
        assert all(e.type is RelationType.CALLS for e in result.edges)

    def test_dependency_directions(self, traversal, code):
        upstream = traversal.get_dependency_graph(code["f3"], "upstream")
        assert set(upstream.nodes) == {code["f3"], code["f2"], code["f1"]}

        downstream = traversal.get_dependency_graph(code["f3"], "downstream")
        assert set(downstream.nodes) == {code["f3"]}

        with pytest.raises(InvalidArgumentError):
            traversal.get_dependency_graph(code["f3"], "sideways")

    def test_subgraph(self, traversal, code):
        result = traversal.get_subgraph(code["f3"], radius=1)
        assert set(result.nodes) == {code["f3"], code["f2"], code["lib"]}

    def test_inheritance(self, store, traversal):
        base, mid, leaf = ClassNode(name="Base"), ClassNode(name="Mid"), ClassNode(name="Leaf")
        store.create_subgraph([base, mid, leaf], [
            Relationship(mid.id, base.id, RelationType.EXTENDS),
            Relationship(leaf.id, mid.id, RelationType.EXTENDS),
        ])
        result = traversal.get_inheritance_hierarchy(leaf.id)
        assert set(result.nodes) == {base.id, mid.id, leaf.id}

    def test_paths_delegate_to_store(self, traversal, code):
        path = traversal.find_shortest_path(code["f1"], code["f3"])
        assert path.nodes == [code["f1"], code["f2"], code["f3"]]
        assert traversal.find_all_paths(code["f1"], code["f3"], [RelationType.CALLS])[0].length == 2


class TestCommunities:
    @pytest.fixture
    def clusters(self, store):
        names = "abcdxy"
        nodes = {n: ConceptNode(name=n) for n in names}
        pairs = [("a", "b"), ("b", "c"), ("c", "a"), ("c", "d"), ("x", "y")]
        store.create_subgraph(
            list(nodes.values()),
            [Relationship(nodes[s].id, nodes[t].id, RelationType.RELATES_TO) for s, t in pairs],
        )
        return {n: node.id for n, node in nodes.items()}

    def test_fallback_to_components(self, traversal, clusters):
        (community,) = traversal.find_communities(NodeType.CONCEPT, min_size=3)
        members = {n.id for n in community.nodes}
        assert members == {clusters[n] for n in "abcd"}
        assert community.centrality[clusters["c"]] == 1.0
        assert community.centrality[clusters["d"]] == pytest.approx(1 / 3)

    def test_sorted_by_size(self, traversal, clusters):
        communities = traversal.find_communities(min_size=2)
        assert [len(c.nodes) for c in communities] == [4, 2]

    def test_degree_centrality_ignores_direction_and_loops(self):
        edges = [
            Relationship("a", "b", RelationType.CALLS),
            Relationship("b", "a", RelationType.CALLS),
            Relationship("a", "a", RelationType.CALLS),
        ]
        assert degree_centrality(["a", "b", "c"], edges) == {"a": 0.5, "b": 0.5, "c": 0.0}

    def test_connected_components(self):
        edges = [Relationship("a", "b", RelationType.CALLS), Relationship("c", "d", RelationType.CALLS)]
        assert sorted(sorted(c) for c in connected_components(edges)) == [["a", "b"], ["c", "d"]]


class TestAnalysis:
    def test_frequent_triples(self, traversal, code):
        patterns = traversal.find_patterns(min_support=2)
        names = {p.name: p for p in patterns}
        assert set(names) == {"File-CONTAINS-Function", "Function-CALLS-Function"}
        assert names["File-CONTAINS-Function"].usage_count == 3
        assert names["File-CONTAINS-Function"].confidence == pytest.approx(0.03)

    def test_rank_nodes_uses_pagerank(self, traversal, code):
        ranks = traversal.rank_nodes(NodeType.FUNCTION)
        assert set(ranks) == {code["f1"], code["f2"], code["f3"]}

    def test_rank_nodes_degree_fallback(self, traversal, store, code, monkeypatch):
        def unavailable(node_type=None):
            raise AlgorithmUnavailable("pagerank", "test")

        monkeypatch.setattr(store, "pagerank", unavailable)
        ranks = traversal.rank_nodes(NodeType.FUNCTION)
        assert ranks[code["f2"]] == 1.0
        assert ranks[code["f1"]] == 0.5
