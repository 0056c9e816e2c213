"""Tests for semantic edge discovery and remote sync."""

import math

import pytest

from topology_cli.models import Edge, SimilarResult, VectorMetadata, VectorRecord
from topology_cli.similarity import (
    cosine_similarity,
    edge_key_set,
    find_semantic_edges,
    find_semantic_edges_ann,
    sync_to_store,
    to_graph_edges,
)


def _unit(angle_degrees):
    rad = math.radians(angle_degrees)
    return [math.cos(rad), math.sin(rad)]


# Pairwise cosines: a-b 0.985, a-c 0.866, b-c 0.940, d is orthogonal to a
EMBEDDINGS = {
    "src/a.ts": _unit(0),
    "src/b.ts": _unit(10),
    "src/c.ts": _unit(30),
    "src/d.ts": _unit(90),
}


class FakeStore:
    """In-memory store answering queries by brute force."""

    provider = "fake"

    def __init__(self, vectors):
        self.vectors = vectors
        self.upserts = []
        self.pruned_with = None

    def query(self, vector, top_k, namespace=None):
        scored = [
            SimilarResult(id=k, score=cosine_similarity(vector, v))
            for k, v in self.vectors.items()
        ]
        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:top_k]

    def upsert(self, records):
        self.upserts.append(list(records))

    def prune(self, live_ids):
        self.pruned_with = set(live_ids)
        return 2


class TestFindSemanticEdges:
    """Tests for the brute-force search."""

    def test_threshold_and_order(self):
        edges = find_semantic_edges(EMBEDDINGS, set(), threshold=0.9, max_per_file=3)
        assert [(e.source, e.target) for e in edges] == [
            ("src/a.ts", "src/b.ts"),
            ("src/b.ts", "src/c.ts"),
        ]
        assert edges[0].similarity == pytest.approx(math.cos(math.radians(10)))

    def test_lower_threshold_adds_edges(self):
        """Lowering the threshold never removes an edge."""
        high = {(e.source, e.target) for e in find_semantic_edges(EMBEDDINGS, set(), 0.9, 3)}
        low = {(e.source, e.target) for e in find_semantic_edges(EMBEDDINGS, set(), 0.5, 3)}
        assert high < low

    def test_existing_import_in_either_direction_excluded(self):
        existing = {("src/b.ts", "src/a.ts")}
        edges = find_semantic_edges(EMBEDDINGS, existing, threshold=0.8, max_per_file=3)
        assert ("src/a.ts", "src/b.ts") not in {(e.source, e.target) for e in edges}

    def test_max_per_file(self):
        edges = find_semantic_edges(EMBEDDINGS, set(), threshold=0.8, max_per_file=1)
        # each file keeps its best partner; a and b pick each other, c picks b
        assert {(e.source, e.target) for e in edges} == {
            ("src/a.ts", "src/b.ts"),
            ("src/b.ts", "src/c.ts"),
        }

    def test_empty_and_single(self):
        assert find_semantic_edges({}, set(), 0.5, 3) == []
        assert find_semantic_edges({"a": [1.0]}, set(), 0.5, 3) == []

    def test_edge_key_set_ignores_semantic(self):
        edges = [
            Edge(id="e0", source="a", target="b"),
            Edge(id="e1", source="b", target="c", link_type="semantic", similarity=0.9),
        ]
        assert edge_key_set(edges) == {("a", "b")}


class TestFindSemanticEdgesAnn:
    """Tests for store-backed neighbour search."""

    def test_matches_brute_force(self):
        store = FakeStore(EMBEDDINGS)
        ann = find_semantic_edges_ann(store, EMBEDDINGS, set(), threshold=0.9, max_per_file=3)
        brute = find_semantic_edges(EMBEDDINGS, set(), threshold=0.9, max_per_file=3)
        assert [(e.source, e.target) for e in ann] == [(e.source, e.target) for e in brute]

    def test_no_duplicates_or_self_edges(self):
        store = FakeStore(EMBEDDINGS)
        edges = find_semantic_edges_ann(store, EMBEDDINGS, set(), threshold=0.0, max_per_file=3)
        keys = [(e.source, e.target) for e in edges]
        assert len(keys) == len(set(keys))
        assert all(s != t for s, t in keys)
        assert all(s < t for s, t in keys)

    def test_existing_edges_excluded(self):
        store = FakeStore(EMBEDDINGS)
        existing = {("src/a.ts", "src/b.ts")}
        edges = find_semantic_edges_ann(store, EMBEDDINGS, existing, threshold=0.9, max_per_file=3)
        assert [(e.source, e.target) for e in edges] == [("src/b.ts", "src/c.ts")]


class TestGraphEdges:
    """Tests for conversion into graph edges."""

    def test_ids_continue_and_similarity_rounded(self):
        semantic = find_semantic_edges(EMBEDDINGS, set(), threshold=0.9, max_per_file=3)
        edges = to_graph_edges(semantic, start_index=3)

        assert [e.id for e in edges] == ["e3", "e4"]
        assert all(e.link_type == "semantic" and not e.is_broken for e in edges)
        assert edges[0].similarity == round(math.cos(math.radians(10)), 4)


class TestSyncToStore:
    """Tests for sync_to_store."""

    def test_batches_and_prunes(self):
        store = FakeStore({})
        records = [
            VectorRecord(id=f"f{i}", embedding=[1.0], metadata=VectorMetadata("h", "m"))
            for i in range(5)
        ]

        result = sync_to_store(store, records, ["f0", "f1"], batch_size=2)

        assert [len(b) for b in store.upserts] == [2, 2, 1]
        assert result.upserted == 5
        assert result.pruned == 2
        assert store.pruned_with == {"f0", "f1"}
        assert result.duration_ms >= 0

    def test_nothing_to_upsert(self):
        store = FakeStore({})
        result = sync_to_store(store, [], [], batch_size=100)
        assert store.upserts == []
        assert result.upserted == 0
