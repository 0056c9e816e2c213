"""Tests for graph queries."""

from unittest.mock import MagicMock

import pytest

from topology_cli.models import Edge, Graph, Node, SimilarResult, VectorMetadata, VectorRecord
from topology_cli.queries import (
    MAX_DEPTH,
    find_similar_files,
    get_broken_edges,
    get_dependencies,
    get_file_impact,
    list_conflicts,
    summarize_graph,
)


def _stored(file_id, vector):
    return VectorRecord(id=file_id, embedding=vector, metadata=VectorMetadata("h", "m"))


@pytest.fixture
def graph() -> Graph:
    """index -> app -> utils -> core, plus a semantic link index ~ docs."""
    ids = ["index.ts", "app.ts", "utils.ts", "core.ts", "docs.ts"]
    nodes = [Node(id=i, label=i) for i in ids]
    nodes[2].status = "MODIFIED"
    edges = [
        Edge(id="e0", source="index.ts", target="app.ts"),
        Edge(id="e1", source="app.ts", target="utils.ts", is_broken=True),
        Edge(id="e2", source="utils.ts", target="core.ts"),
        Edge(id="e3", source="index.ts", target="utils.ts"),
        Edge(id="e4", source="index.ts", target="docs.ts", link_type="semantic", similarity=0.8),
        Edge(id="e5", source="app.ts", target="docs.ts", link_type="semantic", similarity=0.9),
    ]
    return Graph(nodes=nodes, edges=edges)


class TestGetDependencies:
    """Tests for get_dependencies."""

    def test_default_is_one_hop_both_ways(self, graph):
        report = get_dependencies(graph, "app.ts")
        assert [(h.file, h.depth, h.is_broken) for h in report.imports] == [("utils.ts", 1, True)]
        assert [h.file for h in report.imported_by] == ["index.ts"]

    def test_depth_reports_shallowest(self, graph):
        """utils.ts is both a direct and a two-hop import of index.ts."""
        report = get_dependencies(graph, "index.ts", direction="imports", depth=3)
        assert [(h.file, h.depth) for h in report.imports] == [
            ("app.ts", 1), ("utils.ts", 1), ("core.ts", 2),
        ]
        assert report.imported_by == []

    def test_semantic_edges_not_followed(self, graph):
        report = get_dependencies(graph, "docs.ts", depth=MAX_DEPTH)
        assert report.imports == [] and report.imported_by == []

    def test_serialised_keys_follow_direction(self, graph):
        payload = get_dependencies(graph, "utils.ts", direction="importedBy").to_dict()
        assert "imports" not in payload
        assert payload["filePath"] == "utils.ts"
        assert {h["file"] for h in payload["importedBy"]} == {"app.ts", "index.ts"}

    @pytest.mark.parametrize("kwargs", [{"direction": "sideways"}, {"depth": 0}, {"depth": MAX_DEPTH + 1}])
    def test_invalid_arguments(self, graph, kwargs):
        with pytest.raises(ValueError):
            get_dependencies(graph, "app.ts", **kwargs)

    def test_unknown_file(self, graph):
        report = get_dependencies(graph, "ghost.ts")
        assert report.imports == [] and report.imported_by == []


class TestImpactAndBroken:
    """Tests for transitive impact and broken edge listing."""

    def test_file_impact_is_transitive(self, graph):
        hits = get_file_impact(graph, "core.ts")
        assert [(h.file, h.depth) for h in hits] == [("utils.ts", 1), ("app.ts", 2), ("index.ts", 2)]

    def test_broken_edges(self, graph):
        assert [e.id for e in get_broken_edges(graph)] == ["e1"]

    def test_summary(self, graph):
        assert summarize_graph(graph) == {
            "nodes": 5,
            "dependency_edges": 4,
            "semantic_edges": 2,
            "broken_edges": 1,
            "changed_files": 1,
        }


class TestFindSimilarFiles:
    """Tests for find_similar_files."""

    def test_graph_fallback(self, graph):
        source, results = find_similar_files(graph, "docs.ts")
        assert source == "graph"
        assert [(r.file, r.similarity) for r in results] == [("app.ts", 0.9), ("index.ts", 0.8)]

    def test_graph_limit(self, graph):
        _, results = find_similar_files(graph, "docs.ts", limit=1)
        assert [r.file for r in results] == ["app.ts"]

    def test_store_query_excludes_self(self, graph):
        store = MagicMock()
        store.fetch.return_value = [_stored("docs.ts", [1.0, 0.0])]
        store.query.return_value = [
            SimilarResult(id="docs.ts", score=1.0),
            SimilarResult(id="other.ts", score=0.87654, metadata=VectorMetadata("h", "m", repo_id="r2")),
        ]

        source, results = find_similar_files(graph, "docs.ts", store=store, limit=5)

        assert source == "store"
        assert [(r.file, r.similarity, r.repo_id) for r in results] == [("other.ts", 0.877, None)]
        assert store.query.call_args.args[1] == 6
        assert "namespace" not in store.query.call_args.kwargs

    def test_cross_repo_queries_all_namespaces(self, graph):
        store = MagicMock()
        store.fetch.return_value = [_stored("docs.ts", [1.0])]
        store.query.return_value = [
            SimilarResult(id="x.ts", score=0.9, metadata=VectorMetadata("h", "m", repo_id="r2")),
        ]

        _, results = find_similar_files(graph, "docs.ts", store=store, cross_repo=True)

        assert store.query.call_args.kwargs == {"namespace": None}
        assert results[0].repo_id == "r2"

    def test_store_failure_falls_back(self, graph):
        store = MagicMock()
        store.fetch.side_effect = ConnectionError("offline")

        source, results = find_similar_files(graph, "docs.ts", store=store)
        assert source == "graph"
        assert len(results) == 2

    def test_file_missing_from_store_falls_back(self, graph):
        store = MagicMock()
        store.fetch.return_value = []

        source, _ = find_similar_files(graph, "docs.ts", store=store)
        assert source == "graph"
        store.query.assert_not_called()


class TestListConflicts:
    """Tests for list_conflicts."""

    def test_outside_repository(self, graph, temp_dir):
        warnings, counts = list_conflicts(temp_dir, graph)
        assert warnings == []
        assert counts == {"high": 0, "medium": 0, "low": 0}
