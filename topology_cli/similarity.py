"""Semantic edge discovery between files that do not import each other."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from .models import Edge, SemanticEdge, VectorRecord
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

EdgeKeySet = Set[Tuple[str, str]]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product; equal to cosine similarity for unit-length vectors."""
    return sum(x * y for x, y in zip(a, b))


def edge_key_set(edges: Iterable[Edge]) -> EdgeKeySet:
    """Directed ``(source, target)`` pairs of the dependency edges."""
    return {(e.source, e.target) for e in edges if e.link_type == "dependency"}


def _connected(a: str, b: str, existing: EdgeKeySet) -> bool:
    return (a, b) in existing or (b, a) in existing


def find_semantic_edges(
    embeddings: Mapping[str, Sequence[float]],
    existing_edges: EdgeKeySet,
    threshold: float,
    max_per_file: int,
) -> List[SemanticEdge]:
    """Brute-force pairwise search.

    Every pair at or above *threshold* without an import edge in either
    direction is a candidate for both of its files.  Each file keeps its
    *max_per_file* strongest candidates; the union is returned sorted by
    similarity, strongest first.
    """
    files = list(embeddings)
    candidates: Dict[str, List[SemanticEdge]] = {}

    for i, a in enumerate(files):
        for b in files[i + 1:]:
            if _connected(a, b, existing_edges):
                continue
            sim = cosine_similarity(embeddings[a], embeddings[b])
            if sim < threshold:
                continue
            edge = SemanticEdge(source=a, target=b, similarity=sim)
            candidates.setdefault(a, []).append(edge)
            candidates.setdefault(b, []).append(edge)

    selected: Set[Tuple[str, str]] = set()
    result: List[SemanticEdge] = []
    for file_candidates in candidates.values():
        file_candidates.sort(key=lambda e: e.similarity, reverse=True)
        for edge in file_candidates[:max_per_file]:
            key = (edge.source, edge.target)
            if key not in selected:
                selected.add(key)
                result.append(edge)

    result.sort(key=lambda e: e.similarity, reverse=True)
    return result


def find_semantic_edges_ann(
    store: VectorStore,
    embeddings: Mapping[str, Sequence[float]],
    existing_edges: EdgeKeySet,
    threshold: float,
    max_per_file: int,
) -> List[SemanticEdge]:
    """Per-file nearest-neighbour queries against *store*.

    Asks for ``2 * max_per_file`` neighbours to leave room for filtering
    (self, below threshold, already imported, already selected).
    """
    selected: Set[Tuple[str, str]] = set()
    result: List[SemanticEdge] = []

    for file_path, vector in embeddings.items():
        count = 0
        for candidate in store.query(vector, max_per_file * 2):
            if count >= max_per_file:
                break
            if candidate.id == file_path or candidate.score < threshold:
                continue
            if _connected(file_path, candidate.id, existing_edges):
                continue
            source, target = sorted((file_path, candidate.id))
            if (source, target) in selected:
                continue
            selected.add((source, target))
            result.append(SemanticEdge(source=source, target=target, similarity=candidate.score))
            count += 1

    result.sort(key=lambda e: e.similarity, reverse=True)
    return result


def to_graph_edges(semantic: Iterable[SemanticEdge], start_index: int = 0) -> List[Edge]:
    return [
        Edge(
            id=f"e{start_index + i}",
            source=edge.source,
            target=edge.target,
            link_type="semantic",
            similarity=round(edge.similarity, 4),
        )
        for i, edge in enumerate(semantic)
    ]


# ===================================================================
# Remote sync
# ===================================================================

@dataclass
class SyncResult:
    upserted: int
    pruned: int
    duration_ms: int


def sync_to_store(
    store: VectorStore,
    new_records: Sequence[VectorRecord],
    live_ids: Iterable[str],
    batch_size: int = 100,
) -> SyncResult:
    """Upsert *new_records* in batches, then prune ids no longer present."""
    start = time.monotonic()
    upserted = 0
    for offset in range(0, len(new_records), batch_size):
        batch = new_records[offset:offset + batch_size]
        store.upsert(batch)
        upserted += len(batch)
    pruned = store.prune(set(live_ids))
    result = SyncResult(
        upserted=upserted,
        pruned=pruned,
        duration_ms=int((time.monotonic() - start) * 1000),
    )
    logger.info(
        "Vector sync (%s): %d upserted, %d pruned in %dms",
        store.provider, result.upserted, result.pruned, result.duration_ms,
    )
    return result
