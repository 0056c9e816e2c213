"""Watch mode: re-analyse on source edits and git operations."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pygit2
import typer
from rich.console import Console

from .config import DEFAULT_DEBOUNCE_MS, SKIP_DIRS, SNAPSHOT_FILE_NAME, SUPPORTED_EXTENSIONS
from .git_diff import current_branch, open_repo

console = Console()
logger = logging.getLogger(__name__)

# Paths under .git/ whose changes mean a commit, checkout, merge or rebase
GIT_WATCHED = ("HEAD", "refs/heads", "MERGE_HEAD", "rebase-merge", "rebase-apply")

SEVERITY_STYLE = {"high": "red", "medium": "yellow", "low": "cyan"}


@dataclass(frozen=True)
class FileChange:
    kind: str  # add | change | unlink
    path: str


class Debouncer:
    """Collect events and flush them once *delay* seconds after the last one.

    Pending changes are keyed by path, so a file touched several times is
    reported once with its latest event kind.
    """

    def __init__(self, delay: float, callback: Callable[[List[FileChange]], None]) -> None:
        self.delay = delay
        self.callback = callback
        self._pending: Dict[str, FileChange] = {}
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def push(self, kind: str, path: str) -> None:
        with self._lock:
            self._pending[path] = FileChange(kind=kind, path=path)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        with self._lock:
            changes = list(self._pending.values())
            self._pending.clear()
            self._timer = None
        if changes:
            self.callback(changes)

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending.clear()


class AnalysisRunner:
    """Serialises analysis runs.

    A trigger that arrives while a run is in progress is remembered, and
    exactly one follow-up run starts when the current one finishes, however
    many triggers arrived meanwhile.
    """

    def __init__(self, run: Callable[[], None]) -> None:
        self._run = run
        self._lock = threading.Lock()
        self._in_progress = False
        self._pending = False
        self.runs = 0

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def trigger(self) -> None:
        with self._lock:
            if self._in_progress:
                self._pending = True
                return
            self._in_progress = True

        while True:
            try:
                self._run()
            except Exception as exc:
                logger.error("Analysis run failed: %s", exc)
                console.print(f"[red]✗[/red] Analysis failed: {exc}")
            finally:
                self.runs += 1
            with self._lock:
                if not self._pending:
                    self._in_progress = False
                    return
                self._pending = False


# ===================================================================
# Git events
# ===================================================================

def read_git_state(repo_path: Path) -> Tuple[Optional[str], Optional[str]]:
    """``(branch, commit hash)``; branch is ``None`` when HEAD is detached."""
    handle = open_repo(repo_path)
    if handle is None:
        return None, None
    repo = handle.repo
    try:
        commit = str(repo.head.target) if not repo.head_is_unborn else None
    except pygit2.GitError as exc:
        logger.debug("Could not read HEAD in %s: %s", repo_path, exc)
        commit = None
    return current_branch(repo), commit


class GitEventDetector:
    """Classifies a burst of ``.git/`` changes as a git operation."""

    def __init__(self, repo_path: Path) -> None:
        self.repo_path = Path(repo_path)
        self.git_dir = self.repo_path / ".git"
        self.branch, self.commit = read_git_state(self.repo_path)

    def detect(self) -> Optional[Dict[str, Optional[str]]]:
        previous_branch, previous_commit = self.branch, self.commit
        self.branch, self.commit = read_git_state(self.repo_path)

        event = "unknown"
        if (self.git_dir / "MERGE_HEAD").exists():
            event = "merge"
        elif (self.git_dir / "rebase-merge").exists() or (self.git_dir / "rebase-apply").exists():
            event = "rebase"
        elif previous_branch != self.branch:
            event = "branch_switch"
        elif previous_commit != self.commit and self.commit:
            event = "commit"

        if event == "unknown":
            return None
        return {
            "event": event,
            "branch": self.branch or "HEAD (detached)",
            "commit": self.commit,
            "previous_branch": previous_branch if previous_branch != self.branch else None,
        }


def is_git_watched(git_dir: Path, path: str) -> bool:
    try:
        rel = Path(path).relative_to(git_dir).as_posix()
    except ValueError:
        return False
    return any(rel == p or rel.startswith(p + "/") for p in GIT_WATCHED)


def is_watched_source(root: Path, path: str) -> bool:
    file_path = Path(path)
    if file_path.suffix.lower() not in SUPPORTED_EXTENSIONS or file_path.name.endswith(".d.ts"):
        return False
    try:
        rel = file_path.relative_to(root)
    except ValueError:
        return False
    return not any(part in SKIP_DIRS for part in rel.parts[:-1])


# ===================================================================
# Command
# ===================================================================

def watch(
    path: Path = typer.Argument(Path("."), exists=True, file_okay=False, help="Directory to watch."),
    debounce: int = typer.Option(DEFAULT_DEBOUNCE_MS, "--debounce", "-d", min=0, help="Debounce delay in milliseconds."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Topology data file (default: <path>/topology-data.json)."),
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base branch (default: auto-detect main/master)."),
    no_git: bool = typer.Option(False, "--no-git", help="Skip git diff analysis."),
    no_cache: bool = typer.Option(False, "--no-cache", help="Disable the parse/embedding cache."),
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Cache directory."),
    no_embeddings: bool = typer.Option(False, "--no-embeddings", help="Skip semantic edge discovery."),
    similarity_threshold: Optional[float] = typer.Option(None, "--similarity-threshold", help="Cosine threshold for semantic edges."),
):
    """👀 Watch mode — re-analyse whenever sources or branches change.

    Example:
      topo watch
      topo watch ./src --debounce 500
    """
    from watchdog.events import FileSystemEventHandler
    from watchdog.observers import Observer

    from .cli import build_options
    from .config_manager import ConfigurationError
    from .conflicts import detect_conflicts
    from .orchestrator import TopologyState
    from .snapshot import save_topology_data

    try:
        options = build_options(
            base=base,
            no_git=no_git,
            no_cache=no_cache,
            cache_dir=cache_dir,
            no_embeddings=no_embeddings,
            similarity_threshold=similarity_threshold,
        )
    except ConfigurationError as exc:
        console.print(f"[red]✗[/red] Configuration error: {exc}")
        raise typer.Exit(1)

    root = path.resolve()
    output_path = output or root / SNAPSHOT_FILE_NAME
    state = TopologyState(root, options)

    def report_conflicts(graph) -> None:
        try:
            warnings = detect_conflicts(root, graph, base_branch=base)
        except Exception as exc:
            logger.warning("Conflict detection failed: %s", exc)
            console.print(f"[yellow]⚠[/yellow]  Conflict detection failed: {exc}")
            return
        if not warnings:
            return
        console.print(f"\n[red]●[/red] {len(warnings)} conflict warning(s):")
        for w in warnings:
            style = SEVERITY_STYLE[w.severity]
            console.print(f"   [{style}]{w.severity}[/{style}] [magenta]{w.other_branch}[/magenta] {w.description}")

    def run_once() -> None:
        console.print("\n[bold]🔄 Running analysis...[/bold]")
        graph = state.refresh()
        save_topology_data(output_path, graph, root)
        broken = len(graph.broken_edges())
        console.print(
            f"[green]✓[/green] Analysis complete: {len(graph.nodes)} nodes, {len(graph.edges)} edges"
        )
        if broken:
            console.print(f"[yellow]⚠[/yellow]  Potentially broken dependencies: {broken}")
        threading.Thread(target=report_conflicts, args=(graph,), daemon=True).start()

    runner = AnalysisRunner(run_once)

    def on_source_changes(changes: List[FileChange]) -> None:
        counts = {"add": 0, "change": 0, "unlink": 0}
        for change in changes:
            counts[change.kind] = counts.get(change.kind, 0) + 1
        parts = [
            f"{sign}{counts[kind]}"
            for kind, sign in (("add", "+"), ("change", "~"), ("unlink", "-"))
            if counts[kind]
        ]
        console.print(f"\n📝 Files changed: {', '.join(parts)}")
        runner.trigger()

    git_dir = root / ".git"
    detector = GitEventDetector(root) if git_dir.is_dir() else None

    def on_git_changes(_changes: List[FileChange]) -> None:
        if detector is None:
            return
        event = detector.detect()
        if event is None:
            return
        console.print(f"\n🔀 Git {event['event'].replace('_', ' ')} on [cyan]{event['branch']}[/cyan]")
        runner.trigger()

    delay = debounce / 1000.0
    source_debouncer = Debouncer(delay, on_source_changes)
    git_debouncer = Debouncer(max(delay, 0.5), on_git_changes)

    kinds = {"created": "add", "modified": "change", "deleted": "unlink", "moved": "change"}

    class SourceHandler(FileSystemEventHandler):
        def on_any_event(self, event):
            if event.is_directory or event.event_type not in kinds:
                return
            if event.event_type == "moved":
                if is_watched_source(root, event.src_path):
                    source_debouncer.push("unlink", event.src_path)
                if is_watched_source(root, event.dest_path):
                    source_debouncer.push("add", event.dest_path)
                return
            if is_watched_source(root, event.src_path):
                source_debouncer.push(kinds[event.event_type], event.src_path)

    class GitHandler(FileSystemEventHandler):
        def on_any_event(self, event):
            paths = [event.src_path, getattr(event, "dest_path", "") or ""]
            for p in paths:
                if p and is_git_watched(git_dir, p):
                    git_debouncer.push("change", p)
                    return

    console.print(f"\n[bold green]👀 Watching[/bold green] [cyan]{root}[/cyan] for changes...")
    console.print(f"[dim]  Debounce:  {debounce}ms")
    console.print(f"  Output:    {output_path}")
    console.print(f"  Git:       {'watching .git' if detector else 'not a repository'}")
    console.print("  Press Ctrl+C to stop[/dim]")

    runner.trigger()

    observer = Observer()
    observer.schedule(SourceHandler(), str(root), recursive=True)
    if detector is not None:
        observer.schedule(GitHandler(), str(git_dir), recursive=True)
    observer.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        observer.stop()
        source_debouncer.cancel()
        git_debouncer.cancel()
        console.print(f"\n[yellow]Stopped watching.[/yellow] Ran {runner.runs} analysis pass(es).")

    observer.join()
