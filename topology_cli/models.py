"""Core data models shared by parsing, graph building, embeddings and conflicts."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

DiffStatus = Literal["UNCHANGED", "ADDED", "MODIFIED", "DELETED"]
NodeKind = Literal["FILE", "COMPONENT", "UTILITY"]
LinkType = Literal["dependency", "semantic"]
ConflictType = Literal["direct", "dependency", "semantic"]
Severity = Literal["high", "medium", "low"]

DIFF_STATUSES: Tuple[str, ...] = ("UNCHANGED", "ADDED", "MODIFIED", "DELETED")


def now_ms() -> int:
    return int(time.time() * 1000)


# ===================================================================
# Parse results
# ===================================================================

@dataclass(frozen=True)
class ParsedImport:
    """One import or re-export statement as written in the source."""
    source: str
    named_imports: Tuple[str, ...] = ()
    default_import: Optional[str] = None
    is_relative: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "namedImports": list(self.named_imports),
            "defaultImport": self.default_import,
            "isRelative": self.is_relative,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ParsedImport":
        return cls(
            source=payload["source"],
            named_imports=tuple(payload.get("namedImports") or ()),
            default_import=payload.get("defaultImport"),
            is_relative=bool(payload.get("isRelative")),
        )


@dataclass(frozen=True)
class ParsedFile:
    """Immutable parse result; superseded when the file content changes."""
    file_path: str
    language: str
    imports: Tuple[ParsedImport, ...]
    export_signature: str
    content_hash: str


# ===================================================================
# Graph
# ===================================================================

@dataclass
class Node:
    id: str
    label: str
    kind: NodeKind = "FILE"
    status: DiffStatus = "UNCHANGED"
    export_signature: Optional[str] = None
    language: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "type": self.kind,
            "status": self.status,
            "astSignature": self.export_signature,
            "language": self.language,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Node":
        return cls(
            id=payload["id"],
            label=payload.get("label", payload["id"].rsplit("/", 1)[-1]),
            kind=payload.get("type", "FILE"),
            status=payload.get("status", "UNCHANGED"),
            export_signature=payload.get("astSignature"),
            language=payload.get("language"),
        )


@dataclass
class Edge:
    id: str
    source: str
    target: str
    is_broken: bool = False
    link_type: LinkType = "dependency"
    similarity: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "isBroken": self.is_broken,
            "linkType": self.link_type,
        }
        if self.similarity is not None:
            payload["similarity"] = self.similarity
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Edge":
        return cls(
            id=payload["id"],
            source=payload["source"],
            target=payload["target"],
            is_broken=bool(payload.get("isBroken", False)),
            link_type=payload.get("linkType", "dependency"),
            similarity=payload.get("similarity"),
        )


@dataclass
class Graph:
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    timestamp: int = field(default_factory=now_ms)

    def node_map(self) -> Dict[str, Node]:
        return {n.id: n for n in self.nodes}

    def dependency_edges(self) -> List[Edge]:
        return [e for e in self.edges if e.link_type == "dependency"]

    def semantic_edges(self) -> List[Edge]:
        return [e for e in self.edges if e.link_type == "semantic"]

    def broken_edges(self) -> List[Edge]:
        return [e for e in self.edges if e.is_broken]

    def validate(self) -> None:
        """Raise ``ValueError`` on duplicate node ids, unknown statuses or dangling edges."""
        ids = set()
        for node in self.nodes:
            if node.id in ids:
                raise ValueError(f"Duplicate node id: {node.id}")
            if node.status not in DIFF_STATUSES:
                raise ValueError(f"Node {node.id} has unknown status {node.status!r}")
            ids.add(node.id)
        for edge in self.edges:
            if edge.source not in ids or edge.target not in ids:
                raise ValueError(
                    f"Edge {edge.id} references unknown node "
                    f"({edge.source} -> {edge.target})"
                )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Graph":
        return cls(
            nodes=[Node.from_dict(n) for n in payload.get("nodes", [])],
            edges=[Edge.from_dict(e) for e in payload.get("edges", [])],
            timestamp=int(payload.get("timestamp") or now_ms()),
        )


# ===================================================================
# Git
# ===================================================================

@dataclass
class GitDiffResult:
    file_status: Dict[str, DiffStatus] = field(default_factory=dict)
    base_branch: Optional[str] = None
    current_branch: Optional[str] = None
    has_uncommitted_changes: bool = False


@dataclass
class CommitInfo:
    hash: str
    message: str
    branch: Optional[str]


# ===================================================================
# Embeddings / vectors
# ===================================================================

@dataclass
class VectorMetadata:
    content_hash: str
    model_id: str
    updated_at: int = field(default_factory=now_ms)
    repo_id: Optional[str] = None
    language: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contentHash": self.content_hash,
            "modelId": self.model_id,
            "updatedAt": self.updated_at,
        }
        if self.repo_id is not None:
            payload["repoId"] = self.repo_id
        if self.language is not None:
            payload["language"] = self.language
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "VectorMetadata":
        return cls(
            content_hash=str(payload.get("contentHash", "")),
            model_id=str(payload.get("modelId", "")),
            updated_at=int(payload.get("updatedAt") or 0),
            repo_id=payload.get("repoId") or None,
            language=payload.get("language") or None,
        )


@dataclass
class VectorRecord:
    id: str
    embedding: List[float]
    metadata: VectorMetadata


@dataclass
class SimilarResult:
    id: str
    score: float
    metadata: Optional[VectorMetadata] = None


@dataclass(frozen=True)
class SemanticEdge:
    source: str
    target: str
    similarity: float


# ===================================================================
# Conflicts
# ===================================================================

@dataclass
class ConflictWarning:
    id: str
    type: ConflictType
    severity: Severity
    current_branch: str
    other_branch: str
    current_file: str
    other_file: str
    description: str
    timestamp: int = field(default_factory=now_ms)
    similarity: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "currentBranch": self.current_branch,
            "otherBranch": self.other_branch,
            "currentFile": self.current_file,
            "otherFile": self.other_file,
            "description": self.description,
            "timestamp": self.timestamp,
        }
        if self.similarity is not None:
            payload["similarity"] = self.similarity
        return payload
