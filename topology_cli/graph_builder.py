"""Build the dependency graph from parsed files.

Nodes are files; edges are resolved relative imports.  An edge is marked
*broken* when the imported file's export signature changed against the
base branch while the importer was left untouched, or when the imported
file was deleted.
"""

from __future__ import annotations

import logging
import posixpath
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from .adapters import AdapterRegistry, default_registry
from .git_diff import get_file_at_ref
from .models import DiffStatus, Edge, GitDiffResult, Graph, Node, NodeKind, ParsedFile

logger = logging.getLogger(__name__)

# (basename, dirname, language) -> kind, or None to defer to the next rule
KindRule = Callable[[str, str, str], Optional[NodeKind]]
FileAtRef = Callable[[Path, str, str], Optional[str]]

JS_RESOLUTION_SUFFIXES = (
    ".ts", ".tsx", ".js", ".jsx",
    "/index.ts", "/index.tsx", "/index.js", "/index.jsx",
)


# ===================================================================
# Node kind inference
# ===================================================================

def _component_extension(name: str, dirname: str, language: str) -> Optional[NodeKind]:
    return "COMPONENT" if name.endswith((".tsx", ".jsx")) else None


def _component_dir(name: str, dirname: str, language: str) -> Optional[NodeKind]:
    return "COMPONENT" if "component" in dirname else None


def _utility_dir(name: str, dirname: str, language: str) -> Optional[NodeKind]:
    if any(token in dirname for token in ("util", "helper", "lib")):
        return "UTILITY"
    return None


def _python_utility_module(name: str, dirname: str, language: str) -> Optional[NodeKind]:
    if language == "python" and name.startswith(("utils", "helpers")):
        return "UTILITY"
    return None


def _python_view_dir(name: str, dirname: str, language: str) -> Optional[NodeKind]:
    if language == "python" and ("views" in dirname or "controllers" in dirname):
        return "COMPONENT"
    return None


DEFAULT_KIND_RULES: List[KindRule] = [
    _component_extension,
    _component_dir,
    _utility_dir,
    _python_utility_module,
    _python_view_dir,
]


def infer_node_kind(
    file_path: str,
    language: str,
    rules: Optional[Sequence[KindRule]] = None,
) -> NodeKind:
    """First matching rule wins; ``FILE`` when none match."""
    name = posixpath.basename(file_path).lower()
    dirname = posixpath.dirname(file_path).lower()
    for rule in rules if rules is not None else DEFAULT_KIND_RULES:
        kind = rule(name, dirname, language)
        if kind is not None:
            return kind
    return "FILE"


# ===================================================================
# Import resolution
# ===================================================================

def normalize_path(path: str) -> str:
    """Forward slashes, ``.`` and ``..`` segments resolved, no leading ``./``."""
    result: List[str] = []
    for part in path.replace("\\", "/").split("/"):
        if part == "..":
            if result:
                result.pop()
        elif part not in (".", ""):
            result.append(part)
    return "/".join(result)


def resolve_js_import(from_file: str, source: str, known: Set[str]) -> Optional[str]:
    if source.endswith(".js"):
        source = source[:-3]
    from_dir = posixpath.dirname(from_file)
    resolved = normalize_path(f"{from_dir}/{source}" if from_dir else source)
    if resolved in known:
        return resolved
    for suffix in JS_RESOLUTION_SUFFIXES:
        candidate = resolved + suffix
        if candidate in known:
            return candidate
    return None


def resolve_python_import(from_file: str, source: str, known: Set[str]) -> Optional[str]:
    dots = len(source) - len(source.lstrip("."))
    module = source[dots:].replace(".", "/")

    if dots == 0:
        base = module
    else:
        base_dir = posixpath.dirname(from_file)
        for _ in range(dots - 1):
            base_dir = posixpath.dirname(base_dir)
        if module:
            base = normalize_path(f"{base_dir}/{module}" if base_dir else module)
        else:
            base = base_dir

    for candidate in (f"{base}.py", f"{base}/__init__.py"):
        candidate = normalize_path(candidate)
        if candidate in known:
            return candidate
    return None


def resolve_import(from_file: str, source: str, language: str, known: Set[str]) -> Optional[str]:
    if language == "python":
        return resolve_python_import(from_file, source, known)
    return resolve_js_import(from_file, source, known)


# ===================================================================
# Builder
# ===================================================================

def _export_signature_changed(
    base_path: Path,
    parsed: ParsedFile,
    base_branch: str,
    registry: AdapterRegistry,
    file_at_ref: FileAtRef,
) -> bool:
    try:
        base_content = file_at_ref(base_path, parsed.file_path, base_branch)
        if base_content is None:
            return False
        adapter = registry.for_path(parsed.file_path)
        if adapter is None:
            return False
        base_signature = adapter.extract_export_signature(base_content, parsed.file_path)
        return base_signature != parsed.export_signature
    except Exception as exc:
        logger.debug("Export comparison skipped for %s: %s", parsed.file_path, exc)
        return False


def build_graph(
    parsed_files: Iterable[ParsedFile],
    base_path: Path,
    git_diff: Optional[GitDiffResult] = None,
    registry: Optional[AdapterRegistry] = None,
    kind_rules: Optional[Sequence[KindRule]] = None,
    file_at_ref: FileAtRef = get_file_at_ref,
) -> Graph:
    """Turn parse results into a :class:`Graph` of dependency edges.

    Files and imports are visited in input order, so the same input always
    yields the same edge ids.
    """
    files: List[ParsedFile] = []
    seen: Set[str] = set()
    for parsed in parsed_files:
        if parsed.file_path in seen:
            logger.warning("Duplicate parse result for %s ignored", parsed.file_path)
            continue
        seen.add(parsed.file_path)
        files.append(parsed)

    registry = registry or default_registry()
    nodes: List[Node] = []
    node_map: Dict[str, Node] = {}
    changed_exports: Set[str] = set()

    for parsed in files:
        status: DiffStatus = "UNCHANGED"
        if git_diff is not None:
            status = git_diff.file_status.get(parsed.file_path, "UNCHANGED")
        node = Node(
            id=parsed.file_path,
            label=posixpath.basename(parsed.file_path),
            kind=infer_node_kind(parsed.file_path, parsed.language, kind_rules),
            status=status,
            export_signature=parsed.export_signature,
            language=parsed.language,
        )
        nodes.append(node)
        node_map[node.id] = node

        if status == "MODIFIED" and git_diff is not None and git_diff.base_branch:
            if _export_signature_changed(
                Path(base_path), parsed, git_diff.base_branch, registry, file_at_ref,
            ):
                changed_exports.add(parsed.file_path)

    known = set(node_map)
    edges: List[Edge] = []
    for parsed in files:
        source_node = node_map[parsed.file_path]
        for imp in parsed.imports:
            if not imp.is_relative:
                continue
            target = resolve_import(parsed.file_path, imp.source, parsed.language, known)
            if target is None:
                continue
            target_node = node_map[target]
            is_broken = (
                (target in changed_exports and source_node.status == "UNCHANGED")
                or target_node.status == "DELETED"
            )
            edges.append(Edge(
                id=f"e{len(edges)}",
                source=parsed.file_path,
                target=target,
                is_broken=is_broken,
            ))

    logger.info(
        "Built graph: %d nodes, %d edges (%d broken)",
        len(nodes), len(edges), sum(1 for e in edges if e.is_broken),
    )
    return Graph(nodes=nodes, edges=edges)
