"""Directory analysis pipeline.

One pass over a source tree:

1. scan for supported files,
2. parse them (parse cache first),
3. read the git diff against the base branch,
4. build the dependency graph,
5. embed files and add semantic edges (optional; local or remote store),
6. prune cache rows for files that no longer exist.

Only :class:`ConfigurationError` escapes :func:`analyze_directory`; every
other failure degrades the result (a skipped file, no git status, no
semantic edges) and is logged.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .adapters import AdapterRegistry, default_registry
from .config import DEFAULT_MAX_PER_FILE, DEFAULT_SIMILARITY_THRESHOLD, MAX_EMBEDDING_FILES, SKIP_DIRS
from .config_manager import ConfigurationError, VectorStoreConfig, resolve_vector_config, validate_threshold
from .embeddings import EMBEDDING_MODELS, EmbeddingRun, generate_embeddings, get_embedder
from .git_diff import get_git_diff
from .graph_builder import build_graph
from .models import Edge, Graph, ParsedFile, SemanticEdge, VectorMetadata, VectorRecord, now_ms
from .parser import content_hash
from .similarity import (
    edge_key_set,
    find_semantic_edges,
    find_semantic_edges_ann,
    sync_to_store,
    to_graph_edges,
)
from .storage import CacheDb, EmbeddingCache, ParseCache, VectorSyncState
from .vector_store import VectorStore, create_vector_store

logger = logging.getLogger(__name__)

# Suffixes never analysed even when the extension is supported
IGNORED_SUFFIXES = (".d.ts",)


@dataclass
class AnalyzeOptions:
    base_branch: Optional[str] = None
    skip_git_diff: bool = False
    use_cache: bool = True
    cache_dir: Optional[Path] = None
    embeddings: bool = True
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    max_semantic_per_file: int = DEFAULT_MAX_PER_FILE
    embedding_model: str = "minilm"
    # None resolves from environment / config file
    vector: Optional[VectorStoreConfig] = None


@dataclass
class AnalysisStats:
    files_scanned: int = 0
    files_parsed: int = 0
    parse_cache_hits: int = 0
    embeddings_cached: int = 0
    embeddings_computed: int = 0
    semantic_edges: int = 0
    vectors_synced: int = 0
    languages: Dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0


@dataclass
class AnalysisResult:
    graph: Graph
    stats: AnalysisStats


# ===================================================================
# Scanning / parsing
# ===================================================================

def scan_directory(root: Path, registry: Optional[AdapterRegistry] = None) -> List[str]:
    """Relative forward-slash paths of every analysable file, sorted."""
    root = Path(root)
    registry = registry or default_registry()
    extensions = set(registry.supported_extensions())

    files: List[str] = []
    for file_path in sorted(root.rglob("*")):
        if not file_path.is_file() or file_path.suffix.lower() not in extensions:
            continue
        rel = file_path.relative_to(root)
        if any(part in SKIP_DIRS for part in rel.parts[:-1]):
            continue
        if file_path.name.endswith(IGNORED_SUFFIXES):
            continue
        files.append(rel.as_posix())
    return files


def _read_source(root: Path, rel_path: str) -> str:
    return (root / rel_path).read_text(encoding="utf-8", errors="ignore")


def parse_files(
    root: Path,
    files: List[str],
    registry: AdapterRegistry,
    cache: Optional[ParseCache] = None,
) -> Tuple[List[ParsedFile], int]:
    """Parse *files*, reusing cached results for unchanged content.

    Returns the parse results in input order and the number of cache hits.
    Fresh results are written back in one batch.
    """
    parsed: List[ParsedFile] = []
    fresh: List[ParsedFile] = []
    hits = 0

    for rel in files:
        try:
            content = _read_source(root, rel)
        except OSError as exc:
            logger.warning("Could not read %s: %s", rel, exc)
            continue

        if cache is not None:
            cached = cache.get(rel, content_hash(content))
            if cached is not None:
                parsed.append(cached)
                hits += 1
                continue

        result = registry.parse(content, rel)
        if result is None:
            continue
        parsed.append(result)
        fresh.append(result)

    if cache is not None and fresh:
        cache.set_batch(fresh)
    return parsed, hits


# ===================================================================
# Semantic stage
# ===================================================================

def _open_remote_store(vector: VectorStoreConfig) -> Optional[VectorStore]:
    try:
        return create_vector_store(vector)
    except ConfigurationError:
        raise
    except Exception as exc:
        logger.warning("Vector store '%s' unavailable, using local search: %s", vector.provider, exc)
        return None


def _sync_remote(
    store: VectorStore,
    vector: VectorStoreConfig,
    run: EmbeddingRun,
    parsed_files: List[ParsedFile],
    model_id: str,
    repo_id: str,
    db: Optional[CacheDb],
) -> int:
    """Push vectors the provider has not seen at their current hash."""
    by_path = {p.file_path: p for p in parsed_files}
    sync_state = VectorSyncState(db, store.provider) if db is not None else None
    if sync_state is not None:
        synced = sync_state.synced_hashes()
        pending = [path for path in run.embeddings if synced.get(path) != by_path[path].content_hash]
        stale = sorted(path for path in synced if path not in by_path)
        if stale:
            store.delete(stale)
            logger.info("Removed %d deleted files from %s", len(stale), store.provider)
    else:
        pending = [row[0] for row in run.new_rows]

    updated_at = now_ms()
    records = [
        VectorRecord(
            id=path,
            embedding=run.embeddings[path],
            metadata=VectorMetadata(
                content_hash=by_path[path].content_hash,
                model_id=model_id,
                updated_at=updated_at,
                repo_id=repo_id,
                language=by_path[path].language,
            ),
        )
        for path in pending
    ]
    result = sync_to_store(store, records, by_path.keys(), vector.sync.batch_size)
    if sync_state is not None:
        sync_state.mark_synced([(r.id, r.metadata.content_hash) for r in records])
        sync_state.prune(by_path.keys())
    return result.upserted


def discover_semantic_edges(
    root: Path,
    graph: Graph,
    parsed_files: List[ParsedFile],
    options: AnalyzeOptions,
    vector: VectorStoreConfig,
    db: Optional[CacheDb],
    stats: AnalysisStats,
) -> List[Edge]:
    """Embed files and return semantic edges continuing the graph's edge ids."""
    if len(parsed_files) > MAX_EMBEDDING_FILES:
        logger.warning(
            "Skipping embeddings: %d files exceeds the limit of %d",
            len(parsed_files), MAX_EMBEDDING_FILES,
        )
        return []

    try:
        embedder = get_embedder(options.embedding_model, root, options.cache_dir)
    except Exception as exc:
        logger.warning("Embedding model unavailable, skipping semantic edges: %s", exc)
        return []

    cache = EmbeddingCache(db) if db is not None else None
    run = generate_embeddings(parsed_files, lambda rel: _read_source(root, rel), embedder, cache)
    stats.embeddings_cached = run.cached
    stats.embeddings_computed = run.computed
    if len(run.embeddings) < 2:
        return []

    existing = edge_key_set(graph.edges)
    semantic: Optional[List[SemanticEdge]] = None

    store = _open_remote_store(vector) if vector.is_remote else None
    if store is not None:
        try:
            if vector.sync.enabled:
                try:
                    stats.vectors_synced = _sync_remote(
                        store, vector, run, parsed_files, embedder.model_id, root.name, db,
                    )
                except Exception as exc:
                    logger.warning("Vector sync to %s failed: %s", store.provider, exc)
            if vector.sync.use_cloud_search:
                try:
                    semantic = find_semantic_edges_ann(
                        store, run.embeddings, existing,
                        options.similarity_threshold, options.max_semantic_per_file,
                    )
                except Exception as exc:
                    logger.warning("Remote similarity search failed, using brute force: %s", exc)
        finally:
            store.close()

    if semantic is None:
        semantic = find_semantic_edges(
            run.embeddings, existing, options.similarity_threshold, options.max_semantic_per_file,
        )
    return to_graph_edges(semantic, start_index=len(graph.edges))


# ===================================================================
# Entry points
# ===================================================================

def _validate_options(options: AnalyzeOptions) -> None:
    validate_threshold(options.similarity_threshold)
    if options.max_semantic_per_file < 1:
        raise ConfigurationError(
            f"max_semantic_per_file must be at least 1, got {options.max_semantic_per_file}"
        )
    if options.embedding_model not in EMBEDDING_MODELS:
        raise ConfigurationError(
            f"Unknown embedding model '{options.embedding_model}'. "
            f"Available: {', '.join(EMBEDDING_MODELS)}"
        )


def _open_cache(root: Path, options: AnalyzeOptions) -> Optional[CacheDb]:
    if not options.use_cache:
        return None
    try:
        return CacheDb(root, options.cache_dir).open()
    except (OSError, sqlite3.Error) as exc:
        logger.warning("Cache disabled for this run: %s", exc)
        return None


def run_analysis(
    path: Path,
    options: Optional[AnalyzeOptions] = None,
    registry: Optional[AdapterRegistry] = None,
) -> AnalysisResult:
    """Analyse *path* and return the graph together with run statistics."""
    options = options or AnalyzeOptions()
    _validate_options(options)
    vector = options.vector or resolve_vector_config()

    start = time.monotonic()
    root = Path(path).resolve()
    registry = registry or default_registry()
    stats = AnalysisStats()

    files = scan_directory(root, registry)
    stats.files_scanned = len(files)
    languages = Counter(
        adapter.name for adapter in (registry.for_path(f) for f in files) if adapter is not None
    )
    stats.languages = dict(languages)
    logger.info(
        "Scanning %s: %d source files (%s)",
        root, len(files), ", ".join(f"{k}: {v}" for k, v in sorted(languages.items())) or "none",
    )

    db = _open_cache(root, options)
    try:
        parse_cache = ParseCache(db) if db is not None else None
        parsed_files, stats.parse_cache_hits = parse_files(root, files, registry, parse_cache)
        stats.files_parsed = len(parsed_files)
        logger.info(
            "Parsed %d files (%d from cache)", stats.files_parsed, stats.parse_cache_hits,
        )

        git_diff = None if options.skip_git_diff else get_git_diff(root, options.base_branch)
        graph = build_graph(parsed_files, root, git_diff, registry=registry)

        if options.embeddings:
            semantic_edges = discover_semantic_edges(
                root, graph, parsed_files, options, vector, db, stats,
            )
            graph.edges.extend(semantic_edges)
            stats.semantic_edges = len(semantic_edges)

        if db is not None:
            live = set(files)
            pruned = ParseCache(db).prune(live) + EmbeddingCache(db).prune(live)
            if pruned:
                logger.debug("Pruned %d stale cache rows", pruned)
    finally:
        if db is not None:
            db.close()

    stats.duration_ms = int((time.monotonic() - start) * 1000)
    changed = sum(1 for n in graph.nodes if n.status != "UNCHANGED")
    logger.info(
        "Analysis finished in %dms: %d nodes, %d edges (%d semantic), %d changed, %d broken",
        stats.duration_ms, len(graph.nodes), len(graph.edges), stats.semantic_edges,
        changed, len(graph.broken_edges()),
    )
    return AnalysisResult(graph=graph, stats=stats)


def analyze_directory(path: Path, options: Optional[AnalyzeOptions] = None) -> Graph:
    """Analyse *path* and return its topology graph."""
    return run_analysis(path, options).graph
