"""Topology data file with snapshot history.

The output file (``topology-data.json`` by default) has the shape::

    {"version": 2, "currentIndex": N, "snapshots": [{"metadata": {...}, "graph": {...}}]}

Version 1 files held a bare graph; they are upgraded to a one-snapshot
version 2 file when loaded.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import DEFAULT_MAX_SNAPSHOTS
from .git_diff import get_current_commit_info
from .models import Graph

logger = logging.getLogger(__name__)

DATA_FILE_VERSION = 2


@dataclass
class SnapshotMetadata:
    timestamp: int
    node_count: int
    edge_count: int
    changed_count: int
    broken_count: int
    commit_hash: Optional[str] = None
    commit_message: Optional[str] = None
    branch: Optional[str] = None
    label: Optional[str] = None

    @classmethod
    def for_graph(cls, graph: Graph, **extra: Any) -> "SnapshotMetadata":
        return cls(
            timestamp=graph.timestamp,
            node_count=len(graph.nodes),
            edge_count=len(graph.edges),
            changed_count=sum(1 for n in graph.nodes if n.status != "UNCHANGED"),
            broken_count=sum(1 for e in graph.edges if e.is_broken),
            **extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "commitHash": self.commit_hash,
            "commitMessage": self.commit_message,
            "branch": self.branch,
            "label": self.label,
            "nodeCount": self.node_count,
            "edgeCount": self.edge_count,
            "changedCount": self.changed_count,
            "brokenCount": self.broken_count,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SnapshotMetadata":
        return cls(
            timestamp=int(payload.get("timestamp") or 0),
            node_count=int(payload.get("nodeCount") or 0),
            edge_count=int(payload.get("edgeCount") or 0),
            changed_count=int(payload.get("changedCount") or 0),
            broken_count=int(payload.get("brokenCount") or 0),
            commit_hash=payload.get("commitHash"),
            commit_message=payload.get("commitMessage"),
            branch=payload.get("branch"),
            label=payload.get("label"),
        )


@dataclass
class Snapshot:
    metadata: SnapshotMetadata
    graph: Graph

    def to_dict(self) -> Dict[str, Any]:
        return {"metadata": self.metadata.to_dict(), "graph": self.graph.to_dict()}


@dataclass
class TopologyDataFile:
    snapshots: List[Snapshot] = field(default_factory=list)
    current_index: int = 0
    version: int = DATA_FILE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "currentIndex": self.current_index,
            "snapshots": [s.to_dict() for s in self.snapshots],
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "TopologyDataFile":
        """Parse a v2 file, or upgrade a v1 bare graph."""
        if isinstance(payload, dict) and payload.get("version") == DATA_FILE_VERSION:
            snapshots = [
                Snapshot(
                    metadata=SnapshotMetadata.from_dict(s.get("metadata", {})),
                    graph=Graph.from_dict(s.get("graph", {})),
                )
                for s in payload.get("snapshots", [])
            ]
            return cls(snapshots=snapshots, current_index=int(payload.get("currentIndex", 0)))

        graph = Graph.from_dict(payload if isinstance(payload, dict) else {})
        return cls(snapshots=[Snapshot(SnapshotMetadata.for_graph(graph), graph)])


def load_existing_data(path: Path) -> Optional[TopologyDataFile]:
    if not path.exists():
        return None
    try:
        return TopologyDataFile.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as exc:
        logger.warning("Ignoring unreadable topology data %s: %s", path, exc)
        return None


def create_snapshot(graph: Graph, repo_path: Path, label: Optional[str] = None) -> Snapshot:
    commit = get_current_commit_info(repo_path)
    metadata = SnapshotMetadata.for_graph(
        graph,
        commit_hash=commit.hash if commit else None,
        commit_message=commit.message if commit else None,
        branch=commit.branch if commit else None,
        label=label,
    )
    return Snapshot(metadata=metadata, graph=graph)


def save_topology_data(
    output_path: Path,
    graph: Graph,
    repo_path: Path,
    history: bool = False,
    max_snapshots: int = DEFAULT_MAX_SNAPSHOTS,
    label: Optional[str] = None,
) -> TopologyDataFile:
    """Write *graph* as a snapshot.

    Without *history* the file is overwritten with a single snapshot.  With
    it, the snapshot is appended and the oldest entries beyond
    *max_snapshots* are dropped.
    """
    snapshot = create_snapshot(graph, repo_path, label)

    data = load_existing_data(output_path) if history else None
    if data is None:
        data = TopologyDataFile(snapshots=[snapshot])
    else:
        data.snapshots.append(snapshot)
        if len(data.snapshots) > max_snapshots:
            data.snapshots = data.snapshots[-max_snapshots:]
    data.current_index = len(data.snapshots) - 1

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(data.to_dict(), indent=2), encoding="utf-8")
    logger.info("Wrote %d snapshot(s) to %s", len(data.snapshots), output_path)
    return data


