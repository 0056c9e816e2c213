"""Cross-branch conflict detection.

Compares the files the current branch changed (against the base branch)
with the files every other local branch changed, and grades each overlap:

- **direct** (high): both branches touch the same file.
- **dependency** (medium): the two files are linked by an import edge.
- **semantic** (low): the two files are linked by a semantic edge.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from .git_diff import (
    current_branch,
    detect_base_branch,
    get_branch_modified_files,
    list_other_branches,
    open_repo,
)
from .models import ConflictWarning, Graph, now_ms

logger = logging.getLogger(__name__)

SEVERITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def edge_key(a: str, b: str) -> Tuple[str, str]:
    """Order-independent pair key."""
    return (a, b) if a < b else (b, a)


def _edge_index(graph: Graph) -> Tuple[Set[Tuple[str, str]], Dict[Tuple[str, str], float]]:
    dependency: Set[Tuple[str, str]] = set()
    semantic: Dict[Tuple[str, str], float] = {}
    for edge in graph.edges:
        key = edge_key(edge.source, edge.target)
        if edge.link_type == "semantic":
            semantic[key] = edge.similarity or 0.0
        else:
            dependency.add(key)
    return dependency, semantic


def detect_conflicts(
    repo_path: Path,
    graph: Graph,
    base_branch: Optional[str] = None,
    current: Optional[str] = None,
) -> List[ConflictWarning]:
    """Warnings for every other local branch, ordered high, medium, low.

    Returns ``[]`` outside a repository, when the current or base branch
    cannot be determined, or when the current branch is the base branch.
    """
    handle = open_repo(Path(repo_path))
    if handle is None:
        return []

    current = current or current_branch(handle.repo)
    if not current:
        return []
    base = base_branch or detect_base_branch(handle.repo)
    if not base or current == base:
        return []

    current_files = get_branch_modified_files(handle, current, base)
    if not current_files:
        return []
    current_set = set(current_files)
    dependency, semantic = _edge_index(graph)

    warnings: List[ConflictWarning] = []
    timestamp = now_ms()

    def add(kind: str, severity: str, other_branch: str, cur: str, other: str,
            description: str, similarity: Optional[float] = None) -> None:
        warnings.append(ConflictWarning(
            id=f"conflict-{timestamp}-{len(warnings)}",
            type=kind,  # type: ignore[arg-type]
            severity=severity,  # type: ignore[arg-type]
            current_branch=current,
            other_branch=other_branch,
            current_file=cur,
            other_file=other,
            description=description,
            timestamp=timestamp,
            similarity=similarity,
        ))

    for other_branch in list_other_branches(handle.repo, current, base):
        for other_file in get_branch_modified_files(handle, other_branch, base):
            if other_file in current_set:
                add("direct", "high", other_branch, other_file, other_file,
                    f'Both branches modify "{other_file}"')
                continue

            for cur_file in current_files:
                key = edge_key(cur_file, other_file)
                if key in dependency:
                    add("dependency", "medium", other_branch, cur_file, other_file,
                        f'"{cur_file}" and "{other_file}" have a dependency relationship')
                elif key in semantic:
                    sim = semantic[key]
                    add("semantic", "low", other_branch, cur_file, other_file,
                        f'"{cur_file}" and "{other_file}" are semantically similar ({sim * 100:.0f}%)',
                        similarity=sim)

    warnings.sort(key=lambda w: SEVERITY_ORDER[w.severity])
    logger.info("Conflict scan on '%s' vs '%s': %d warning(s)", current, base, len(warnings))
    return warnings
