"""Typer-based CLI for Topology dependency and change-risk analysis."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__, config, config_manager
from .analyzer import AnalysisResult, AnalyzeOptions, run_analysis, scan_directory
from .cli_watch import watch
from .config_manager import ConfigurationError
from .embeddings import model_id_for
from .models import Graph
from .queries import find_similar_files, get_broken_edges, get_dependencies, list_conflicts
from .snapshot import load_existing_data, save_topology_data
from .storage import CacheDb, EmbeddingCache, ParseCache
from .vector_store import VectorStore, create_vector_store

console = Console()

app = typer.Typer(
    help="🕸️  Topology CLI — dependency graphs with change-risk and semantic links.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

cache_app = typer.Typer(help="🗄️  Inspect and maintain the per-repository cache")
config_app = typer.Typer(help="⚙️  Show and edit ~/.topology/config.toml")

app.add_typer(cache_app, name="cache")
app.add_typer(config_app, name="config")
app.command("watch")(watch)

SEVERITY_STYLE = {"high": "red", "medium": "yellow", "low": "cyan"}
STATUS_STYLE = {"ADDED": "green", "MODIFIED": "yellow", "DELETED": "red", "UNCHANGED": "dim"}


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"Topology CLI v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Log pipeline progress to stderr."),
):
    """Topology CLI: import graphs, broken-export detection and cross-branch conflicts."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ===================================================================
# Shared helpers
# ===================================================================

def build_options(
    base: Optional[str] = None,
    no_git: bool = False,
    no_cache: bool = False,
    cache_dir: Optional[Path] = None,
    no_embeddings: bool = False,
    similarity_threshold: Optional[float] = None,
    max_per_file: Optional[int] = None,
    embedding_model: Optional[str] = None,
    provider: Optional[str] = None,
) -> AnalyzeOptions:
    """Merge command-line flags over the ``[analysis]`` config section.

    Raises :class:`ConfigurationError` for invalid values.
    """
    analysis = config_manager.load_analysis_config()
    overrides: Dict[str, Any] = {"provider": provider} if provider else {}
    threshold = (
        similarity_threshold
        if similarity_threshold is not None
        else float(analysis["similarity_threshold"])
    )
    return AnalyzeOptions(
        base_branch=base,
        skip_git_diff=no_git,
        use_cache=not no_cache,
        cache_dir=cache_dir,
        embeddings=not no_embeddings and bool(analysis["embeddings"]),
        similarity_threshold=config_manager.validate_threshold(threshold),
        max_semantic_per_file=max_per_file or int(analysis["max_semantic_per_file"]),
        embedding_model=embedding_model or str(analysis["embedding_model"]),
        vector=config_manager.resolve_vector_config(overrides),
    )


def _fail(message: str) -> NoReturn:
    console.print(f"[red]✗[/red] {message}")
    raise typer.Exit(1)


def _analyze_or_exit(path: Path, options: AnalyzeOptions) -> AnalysisResult:
    try:
        return run_analysis(path, options)
    except ConfigurationError as exc:
        _fail(f"Configuration error: {exc}")
    except Exception as exc:
        _fail(f"Analysis failed: {exc}")


def _load_graph(
    path: Path, data_file: Optional[Path], no_embeddings: bool, cache_dir: Optional[Path] = None,
) -> Graph:
    """Graph from a saved data file, or from a fresh analysis of *path*."""
    if data_file is not None:
        data = load_existing_data(data_file)
        if data is None or not data.snapshots:
            _fail(f"No topology data in {data_file}")
        return data.snapshots[data.current_index].graph
    try:
        options = build_options(no_embeddings=no_embeddings, cache_dir=cache_dir)
    except ConfigurationError as exc:
        _fail(f"Configuration error: {exc}")
    return _analyze_or_exit(path, options).graph


def _print_summary(result: AnalysisResult) -> None:
    graph, stats = result.graph, result.stats
    table = Table(title="Topology", show_header=True, show_lines=False)
    table.add_column("Metric", style="cyan", min_width=20)
    table.add_column("Value", justify="right", style="bold")
    table.add_row("Files scanned", str(stats.files_scanned))
    table.add_row("Files parsed", f"{stats.files_parsed} ({stats.parse_cache_hits} cached)")
    table.add_row("Nodes", str(len(graph.nodes)))
    table.add_row("Dependency edges", str(len(graph.dependency_edges())))
    table.add_row("Semantic edges", str(len(graph.semantic_edges())))
    table.add_row("Changed files", str(sum(1 for n in graph.nodes if n.status != "UNCHANGED")))
    table.add_row("Broken edges", str(len(graph.broken_edges())))
    if stats.embeddings_cached or stats.embeddings_computed:
        table.add_row(
            "Embeddings",
            f"{stats.embeddings_computed} computed, {stats.embeddings_cached} cached",
        )
    if stats.vectors_synced:
        table.add_row("Vectors synced", str(stats.vectors_synced))
    table.add_row("Duration", f"{stats.duration_ms} ms")
    console.print(table)


def _print_broken(graph: Graph, limit: int = 20) -> None:
    broken = get_broken_edges(graph)
    if not broken:
        return
    console.print(f"\n[yellow]⚠[/yellow]  {len(broken)} potentially broken dependencies:")
    for edge in broken[:limit]:
        console.print(f"  [red]✗[/red] {edge.source} [dim]→[/dim] {edge.target}")
    if len(broken) > limit:
        console.print(f"  [dim]... and {len(broken) - limit} more[/dim]")


# ===================================================================
# analyze
# ===================================================================

@app.command("analyze")
def analyze(
    path: Path = typer.Argument(Path("."), exists=True, file_okay=False, help="Directory to analyse."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Topology data file (default: <path>/topology-data.json)."),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base branch (default: auto-detect main/master)."),
    no_git: bool = typer.Option(False, "--no-git", help="Skip git diff analysis."),
    no_cache: bool = typer.Option(False, "--no-cache", help="Disable the parse/embedding cache."),
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Cache directory (default: <path>/.topology)."),
    no_embeddings: bool = typer.Option(False, "--no-embeddings", help="Skip semantic edge discovery."),
    similarity_threshold: Optional[float] = typer.Option(None, "--similarity-threshold", help="Cosine threshold for semantic edges (0..1)."),
    max_per_file: Optional[int] = typer.Option(None, "--max-per-file", min=1, help="Semantic edges kept per file."),
    embedding_model: Optional[str] = typer.Option(None, "--embedding-model", help="minilm or hash."),
    provider: Optional[str] = typer.Option(None, "--provider", help="Vector store: sqlite, pinecone or pgvector."),
    history: bool = typer.Option(False, "--history", "-H", help="Append a snapshot instead of overwriting."),
    max_snapshots: int = typer.Option(config.DEFAULT_MAX_SNAPSHOTS, "--max-snapshots", min=1, help="Snapshots kept in history mode."),
    snapshot_label: Optional[str] = typer.Option(None, "--snapshot-label", help="Label stored with this snapshot."),
    fail_on_broken: int = typer.Option(-1, "--fail-on-broken", help="Exit 1 when broken edges exceed N (-1 disables)."),
):
    """Analyse a directory and write its topology graph."""
    try:
        options = build_options(
            base=base,
            no_git=no_git,
            no_cache=no_cache,
            cache_dir=cache_dir,
            no_embeddings=no_embeddings,
            similarity_threshold=similarity_threshold,
            max_per_file=max_per_file,
            embedding_model=embedding_model,
            provider=provider,
        )
    except ConfigurationError as exc:
        _fail(f"Configuration error: {exc}")

    root = path.resolve()
    console.print(f"\n[bold]📂 Analysing[/bold] [cyan]{root}[/cyan]")
    result = _analyze_or_exit(root, options)
    _print_summary(result)
    _print_broken(result.graph)

    output_path = output or root / config.SNAPSHOT_FILE_NAME
    data = save_topology_data(
        output_path,
        result.graph,
        root,
        history=history,
        max_snapshots=max_snapshots,
        label=snapshot_label,
    )
    console.print(
        f"\n[green]✓[/green] Wrote {output_path} "
        f"[dim]({len(data.snapshots)} snapshot{'s' if len(data.snapshots) != 1 else ''})[/dim]"
    )

    broken_count = len(result.graph.broken_edges())
    if fail_on_broken >= 0 and broken_count > fail_on_broken:
        console.print(
            f"[red]✗[/red] Broken dependencies ({broken_count}) exceed threshold ({fail_on_broken})"
        )
        raise typer.Exit(1)


# ===================================================================
# Queries
# ===================================================================

_DATA_FILE_OPTION = typer.Option(None, "--data", "-d", exists=True, dir_okay=False, help="Read the graph from a topology data file instead of analysing.")


@app.command("deps")
def deps(
    path: Path = typer.Argument(..., exists=True, file_okay=False, help="Repository root."),
    file: str = typer.Argument(..., help="File path relative to the root, e.g. src/utils/auth.ts."),
    direction: str = typer.Option("both", "--direction", help="imports, importedBy or both."),
    depth: int = typer.Option(1, "--depth", min=1, max=10, help="Traversal depth."),
    data_file: Optional[Path] = _DATA_FILE_OPTION,
):
    """Show what a file imports and what imports it."""
    graph = _load_graph(path.resolve(), data_file, no_embeddings=True)
    try:
        report = get_dependencies(graph, file, direction=direction, depth=depth)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))

    if file not in graph.node_map():
        console.print(f"[yellow]⚠[/yellow]  '{file}' is not a node in the graph.")

    sections = []
    if report.direction != "importedBy":
        sections.append(("Imports", report.imports))
    if report.direction != "imports":
        sections.append(("Imported by", report.imported_by))

    for title, hits in sections:
        console.print(f"\n[bold]{title}[/bold] [dim](depth ≤ {report.depth})[/dim]")
        if not hits:
            console.print("  [dim](none)[/dim]")
        for hit in hits:
            marker = " [red](broken)[/red]" if hit.is_broken else ""
            console.print(f"  {'  ' * (hit.depth - 1)}└─ {hit.file}{marker}")


@app.command("broken")
def broken(
    path: Path = typer.Argument(Path("."), exists=True, file_okay=False, help="Repository root."),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base branch."),
    data_file: Optional[Path] = _DATA_FILE_OPTION,
):
    """List dependencies whose target changed its exports or was deleted."""
    if data_file is not None:
        graph = _load_graph(path, data_file, no_embeddings=True)
    else:
        try:
            options = build_options(base=base, no_embeddings=True)
        except ConfigurationError as exc:
            _fail(f"Configuration error: {exc}")
        graph = _analyze_or_exit(path.resolve(), options).graph

    edges = get_broken_edges(graph)
    if not edges:
        console.print("[green]✓[/green] No broken edges found.")
        return

    table = Table(title=f"Broken edges ({len(edges)})", show_lines=False)
    table.add_column("Importer", style="cyan")
    table.add_column("Target", style="magenta")
    table.add_column("Target status", width=14)
    nodes = graph.node_map()
    for edge in edges:
        status = nodes[edge.target].status if edge.target in nodes else "?"
        style = STATUS_STYLE.get(status, "white")
        table.add_row(edge.source, edge.target, f"[{style}]{status}[/{style}]")
    console.print(table)


def _open_similarity_store(root: Path, cache_db: Optional[CacheDb]) -> Optional[VectorStore]:
    try:
        vector = config_manager.resolve_vector_config()
    except ConfigurationError as exc:
        _fail(f"Configuration error: {exc}")
    try:
        if vector.is_remote:
            return create_vector_store(vector)
        if cache_db is None:
            return None
        model_key = str(config_manager.load_analysis_config()["embedding_model"])
        return create_vector_store(vector, cache_db=cache_db, model_id=model_id_for(model_key))
    except ConfigurationError as exc:
        _fail(f"Configuration error: {exc}")
    except Exception as exc:
        console.print(f"[yellow]⚠[/yellow]  Vector store unavailable ({exc}); using graph edges.")
    return None


@app.command("similar")
def similar(
    path: Path = typer.Argument(..., exists=True, file_okay=False, help="Repository root."),
    file: str = typer.Argument(..., help="File path relative to the root."),
    limit: int = typer.Option(10, "--limit", "-n", min=1, max=50, help="Maximum results."),
    cross_repo: bool = typer.Option(False, "--cross-repo", help="Search every namespace of a remote store."),
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Cache directory (default: <path>/.topology)."),
    data_file: Optional[Path] = _DATA_FILE_OPTION,
):
    """Find files semantically similar to FILE."""
    root = path.resolve()
    graph = _load_graph(root, data_file, no_embeddings=False, cache_dir=cache_dir)

    cache_db = CacheDb(root, cache_dir).open()
    store = _open_similarity_store(root, cache_db)
    try:
        source, results = find_similar_files(graph, file, store=store, limit=limit, cross_repo=cross_repo)
    finally:
        if store is not None:
            store.close()
        cache_db.close()

    if not results:
        console.print(f"[dim]No similar files found for '{file}'. Run analyze with embeddings enabled first.[/dim]")
        return

    table = Table(title=f"Similar to {file} [dim](via {source})[/dim]", show_lines=False)
    table.add_column("#", style="dim", width=4)
    table.add_column("File", style="cyan")
    table.add_column("Similarity", justify="right", style="green")
    if cross_repo:
        table.add_column("Repo", style="magenta")
    for idx, item in enumerate(results, 1):
        row = [str(idx), item.file, f"{item.similarity * 100:.1f}%"]
        if cross_repo:
            row.append(item.repo_id or "")
        table.add_row(*row)
    console.print(table)


@app.command("conflicts")
def conflicts(
    path: Path = typer.Argument(Path("."), exists=True, file_okay=False, help="Repository root."),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base branch (default: auto-detect main/master)."),
    data_file: Optional[Path] = _DATA_FILE_OPTION,
    no_embeddings: bool = typer.Option(False, "--no-embeddings", help="Skip semantic conflicts."),
):
    """Detect overlaps between the current branch and other local branches."""
    root = path.resolve()
    graph = _load_graph(root, data_file, no_embeddings=no_embeddings)
    warnings, counts = list_conflicts(root, graph, base_branch=base)

    if not warnings:
        console.print("[green]✓[/green] No cross-branch conflicts detected.")
        return

    console.print(
        f"\n[bold]Found {len(warnings)} potential conflict(s):[/bold] "
        f"[red]{counts['high']} direct[/red], "
        f"[yellow]{counts['medium']} dependency[/yellow], "
        f"[cyan]{counts['low']} semantic[/cyan]\n"
    )
    table = Table(show_lines=False)
    table.add_column("Severity", width=8)
    table.add_column("Branch", style="magenta")
    table.add_column("Description")
    for warning in warnings:
        style = SEVERITY_STYLE[warning.severity]
        table.add_row(f"[{style}]{warning.severity}[/{style}]", warning.other_branch, warning.description)
    console.print(table)


# ===================================================================
# cache
# ===================================================================

def _format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{num_bytes} B"


@cache_app.command("stats")
def cache_stats(
    path: Path = typer.Argument(Path("."), exists=True, file_okay=False, help="Repository root."),
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Cache directory."),
):
    """Show cache entry counts and size."""
    with CacheDb(path.resolve(), cache_dir) as db:
        stats = db.get_stats()
        location = db.db_path
    console.print(f"[bold]Cache[/bold] [dim]{location}[/dim]")
    console.print(f"  Parsed files  {stats['entries']}")
    console.print(f"  Embeddings    {stats['embeddings']}")
    console.print(f"  Size          {_format_size(stats['size_bytes'])}")


@cache_app.command("prune")
def cache_prune(
    path: Path = typer.Argument(Path("."), exists=True, file_okay=False, help="Repository root."),
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Cache directory."),
):
    """Drop cache rows for files that no longer exist."""
    root = path.resolve()
    live = set(scan_directory(root))
    with CacheDb(root, cache_dir) as db:
        parsed = ParseCache(db).prune(live)
        embedded = EmbeddingCache(db).prune(live)
    console.print(f"[green]✓[/green] Pruned {parsed} parse and {embedded} embedding entries.")


@cache_app.command("clear")
def cache_clear(
    path: Path = typer.Argument(Path("."), exists=True, file_okay=False, help="Repository root."),
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Cache directory."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation."),
):
    """Remove every cached parse result, embedding and sync record."""
    if not yes and not typer.confirm("Clear the topology cache?"):
        raise typer.Exit()
    with CacheDb(path.resolve(), cache_dir) as db:
        db.clear()
    console.print("[green]✓[/green] Cache cleared.")


# ===================================================================
# config
# ===================================================================

def _mask(secret: str) -> str:
    if len(secret) <= 8:
        return "•" * len(secret)
    return secret[:4] + "•" * min(len(secret) - 4, 16)


@config_app.command("show")
def config_show():
    """Show the analysis settings and the resolved vector store."""
    analysis = config_manager.load_analysis_config()
    console.print(f"[bold]Config[/bold] [dim]{config.CONFIG_FILE}[/dim]\n")
    console.print("[bold cyan]analysis[/bold cyan]")
    for key, value in analysis.items():
        console.print(f"  {key:<24} {value}")

    console.print("\n[bold cyan]vectors[/bold cyan]")
    try:
        vector = config_manager.resolve_vector_config()
    except ConfigurationError as exc:
        _fail(f"Configuration error: {exc}")
    console.print(f"  {'provider':<24} {vector.provider}")
    console.print(f"  {'sync':<24} {vector.sync.enabled}")
    console.print(f"  {'batch_size':<24} {vector.sync.batch_size}")
    console.print(f"  {'cloud_search':<24} {vector.sync.use_cloud_search}")
    if vector.pinecone is not None:
        console.print(f"  {'pinecone_index':<24} {vector.pinecone.index_name}")
        console.print(f"  {'pinecone_api_key':<24} {_mask(vector.pinecone.api_key)}")
    if vector.pgvector is not None:
        console.print(f"  {'pgvector_table':<24} {vector.pgvector.table_name}")


@config_app.command("set-analysis")
def config_set_analysis(
    similarity_threshold: Optional[float] = typer.Option(None, "--similarity-threshold"),
    max_per_file: Optional[int] = typer.Option(None, "--max-per-file", min=1),
    embedding_model: Optional[str] = typer.Option(None, "--embedding-model"),
    embeddings: Optional[bool] = typer.Option(None, "--embeddings/--no-embeddings"),
):
    """Persist defaults for the analyze command."""
    if similarity_threshold is not None:
        try:
            config_manager.validate_threshold(similarity_threshold)
        except ConfigurationError as exc:
            raise typer.BadParameter(str(exc))
    if not config_manager.save_analysis_config(
        similarity_threshold=similarity_threshold,
        max_semantic_per_file=max_per_file,
        embedding_model=embedding_model,
        embeddings=embeddings,
    ):
        _fail(f"Could not write {config.CONFIG_FILE}")
    console.print("[green]✓[/green] Analysis settings saved.")


@config_app.command("set-vector")
def config_set_vector(
    provider: str = typer.Argument(..., help="sqlite, pinecone or pgvector."),
    pinecone_api_key: Optional[str] = typer.Option(None, "--pinecone-api-key"),
    pinecone_index: Optional[str] = typer.Option(None, "--pinecone-index"),
    pinecone_namespace: Optional[str] = typer.Option(None, "--pinecone-namespace"),
    pgvector_url: Optional[str] = typer.Option(None, "--pgvector-url"),
    pgvector_table: Optional[str] = typer.Option(None, "--pgvector-table"),
    pgvector_namespace: Optional[str] = typer.Option(None, "--pgvector-namespace"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size"),
    sync: Optional[bool] = typer.Option(None, "--sync/--no-sync"),
    cloud_search: Optional[bool] = typer.Option(None, "--cloud-search/--no-cloud-search"),
):
    """Select and configure the vector store."""
    values: Dict[str, Any] = {
        "provider": provider.lower(),
        "pinecone_api_key": pinecone_api_key,
        "pinecone_index": pinecone_index,
        "pinecone_namespace": pinecone_namespace,
        "pgvector_url": pgvector_url,
        "pgvector_table": pgvector_table,
        "pgvector_namespace": pgvector_namespace,
        "batch_size": batch_size,
        "sync": sync,
        "cloud_search": cloud_search,
    }
    given = {k: v for k, v in values.items() if v is not None}

    # Validate the merged result before touching the file
    merged = dict(config_manager.load_vector_section())
    merged.update(given)
    try:
        config_manager.resolve_vector_config(merged)
    except ConfigurationError as exc:
        _fail(f"Configuration error: {exc}")

    if not config_manager.save_vector_config(**given):
        _fail(f"Could not write {config.CONFIG_FILE}")
    console.print(f"[green]✓[/green] Vector store set to [bold]{provider.lower()}[/bold].")
