"""Read-only queries over an analysed graph."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .conflicts import detect_conflicts
from .models import ConflictWarning, Edge, Graph
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

DIRECTIONS = ("imports", "importedBy", "both")
MAX_DEPTH = 10
DEFAULT_SIMILAR_LIMIT = 10


@dataclass
class DependencyHit:
    file: str
    depth: int
    is_broken: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"file": self.file, "depth": self.depth, "isBroken": self.is_broken}


@dataclass
class DependencyReport:
    file_path: str
    direction: str
    depth: int
    imports: List[DependencyHit] = field(default_factory=list)
    imported_by: List[DependencyHit] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "filePath": self.file_path,
            "direction": self.direction,
            "depth": self.depth,
        }
        if self.direction != "importedBy":
            payload["imports"] = [h.to_dict() for h in self.imports]
        if self.direction != "imports":
            payload["importedBy"] = [h.to_dict() for h in self.imported_by]
        return payload


@dataclass
class SimilarFile:
    file: str
    similarity: float
    repo_id: Optional[str] = None


def _bfs(edges: List[Edge], start: str, forward: bool, max_depth: int) -> List[DependencyHit]:
    """Breadth-first walk; each file is reported once, at its shallowest depth."""
    visited = {start}
    frontier = [start]
    hits: List[DependencyHit] = []

    for depth in range(1, max_depth + 1):
        if not frontier:
            break
        next_frontier: List[str] = []
        for current in frontier:
            for edge in edges:
                here, there = (edge.source, edge.target) if forward else (edge.target, edge.source)
                if here != current or there in visited:
                    continue
                visited.add(there)
                next_frontier.append(there)
                hits.append(DependencyHit(file=there, depth=depth, is_broken=edge.is_broken))
        frontier = next_frontier
    return hits


def get_dependencies(
    graph: Graph,
    file_path: str,
    direction: str = "both",
    depth: int = 1,
) -> DependencyReport:
    """What *file_path* imports and/or what imports it, up to *depth* hops.

    Semantic edges are never followed.
    """
    if direction not in DIRECTIONS:
        raise ValueError(f"direction must be one of {', '.join(DIRECTIONS)}, got '{direction}'")
    if not 1 <= depth <= MAX_DEPTH:
        raise ValueError(f"depth must be between 1 and {MAX_DEPTH}, got {depth}")

    edges = graph.dependency_edges()
    report = DependencyReport(file_path=file_path, direction=direction, depth=depth)
    if direction in ("imports", "both"):
        report.imports = _bfs(edges, file_path, forward=True, max_depth=depth)
    if direction in ("importedBy", "both"):
        report.imported_by = _bfs(edges, file_path, forward=False, max_depth=depth)
    return report


def get_file_impact(graph: Graph, file_path: str) -> List[DependencyHit]:
    """Every file that depends on *file_path*, directly or transitively."""
    return _bfs(graph.dependency_edges(), file_path, forward=False, max_depth=MAX_DEPTH)


def get_broken_edges(graph: Graph) -> List[Edge]:
    return graph.broken_edges()


def _similar_from_graph(graph: Graph, file_path: str, limit: int) -> List[SimilarFile]:
    similar = [
        SimilarFile(
            file=e.target if e.source == file_path else e.source,
            similarity=e.similarity or 0.0,
        )
        for e in graph.semantic_edges()
        if file_path in (e.source, e.target)
    ]
    similar.sort(key=lambda s: s.similarity, reverse=True)
    return similar[:limit]


def find_similar_files(
    graph: Graph,
    file_path: str,
    store: Optional[VectorStore] = None,
    limit: int = DEFAULT_SIMILAR_LIMIT,
    cross_repo: bool = False,
) -> Tuple[str, List[SimilarFile]]:
    """Files most similar to *file_path*.

    With a *store* holding the file's vector, a nearest-neighbour query is
    used (across every namespace when *cross_repo*).  Otherwise, or when the
    store fails, the graph's semantic edges answer.  Returns the answering
    source (``"store"`` or ``"graph"``) and the results.
    """
    if store is not None:
        try:
            records = store.fetch([file_path])
            vector = records[0].embedding if records else None
            if vector:
                kwargs: Dict[str, Any] = {"namespace": None} if cross_repo else {}
                results = store.query(vector, limit + 1, **kwargs)
                similar = [
                    SimilarFile(
                        file=r.id,
                        similarity=round(r.score, 3),
                        repo_id=r.metadata.repo_id if (cross_repo and r.metadata) else None,
                    )
                    for r in results
                    if r.id != file_path
                ]
                return "store", similar[:limit]
        except Exception as exc:
            logger.warning("Vector store lookup failed for %s: %s", file_path, exc)

    return "graph", _similar_from_graph(graph, file_path, limit)


def list_conflicts(
    repo_path: Path,
    graph: Graph,
    base_branch: Optional[str] = None,
) -> Tuple[List[ConflictWarning], Dict[str, int]]:
    """Conflict warnings plus a per-severity count."""
    warnings = detect_conflicts(repo_path, graph, base_branch=base_branch)
    counts = {"high": 0, "medium": 0, "low": 0}
    for warning in warnings:
        counts[warning.severity] += 1
    return warnings, counts


def summarize_graph(graph: Graph) -> Dict[str, int]:
    return {
        "nodes": len(graph.nodes),
        "dependency_edges": len(graph.dependency_edges()),
        "semantic_edges": len(graph.semantic_edges()),
        "broken_edges": len(graph.broken_edges()),
        "changed_files": sum(1 for n in graph.nodes if n.status != "UNCHANGED"),
    }
