"""Pytest configuration and fixtures for Topology CLI tests."""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional

import pygit2
import pytest

from topology_cli.models import ParsedFile, ParsedImport

SIGNATURE = pygit2.Signature("Topology Tests", "tests@example.com")


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path_factory, monkeypatch):
    """Point the global config at an empty temp file and clear TOPOLOGY_* env.

    Keeps a developer's ~/.topology/config.toml (or a remote vector store
    configured through the environment) out of every test.
    """
    home = tmp_path_factory.mktemp("topology_home")
    monkeypatch.setattr("topology_cli.config.BASE_DIR", home)
    monkeypatch.setattr("topology_cli.config.CONFIG_FILE", home / "config.toml")
    for key in list(os.environ):
        if key.startswith("TOPOLOGY_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_project_path() -> Path:
    """Get path to the sample mixed TypeScript/Python project."""
    return Path(__file__).parent / "fixtures" / "sample_project"


def write_files(root: Path, files: Dict[str, str]) -> None:
    for rel, content in files.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


def checkout_branch(repo: pygit2.Repository, name: str, create: bool = False) -> None:
    if create:
        repo.branches.local.create(name, repo[repo.head.target])
    branch = repo.branches.local[name]
    repo.checkout(branch)


class GitRepoBuilder:
    """Small helper around pygit2 for building fixture repositories."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.repo = pygit2.init_repository(str(root), initial_head="main")

    def write(self, files: Dict[str, str]) -> "GitRepoBuilder":
        write_files(self.root, files)
        return self

    def delete(self, rel: str) -> "GitRepoBuilder":
        (self.root / rel).unlink()
        return self

    def commit(self, message: str = "update") -> "GitRepoBuilder":
        index = self.repo.index
        index.add_all()
        # add_all does not stage removals
        for entry in list(index):
            if not (self.root / entry.path).exists():
                index.remove(entry.path)
        index.write()
        tree = index.write_tree()
        parents = [] if self.repo.head_is_unborn else [self.repo.head.target]
        self.repo.create_commit("HEAD", SIGNATURE, SIGNATURE, message, tree, parents)
        return self

    def branch(self, name: str) -> "GitRepoBuilder":
        checkout_branch(self.repo, name, create=True)
        return self

    def checkout(self, name: str) -> "GitRepoBuilder":
        checkout_branch(self.repo, name)
        return self


@pytest.fixture
def git_repo(temp_dir: Path) -> Callable[[Optional[Dict[str, str]]], GitRepoBuilder]:
    """Factory: ``git_repo({"src/a.ts": "..."})`` -> builder with one commit on main."""

    def _make(files: Optional[Dict[str, str]] = None) -> GitRepoBuilder:
        builder = GitRepoBuilder(temp_dir)
        builder.write(files or {"README.md": "fixture\n"})
        builder.commit("initial")
        return builder

    return _make


def make_parsed(
    path: str,
    imports: Optional[List[str]] = None,
    language: str = "typescript",
    signature: str = "sig",
    digest: Optional[str] = None,
) -> ParsedFile:
    """ParsedFile with relative imports given as plain source strings."""
    return ParsedFile(
        file_path=path,
        language=language,
        imports=tuple(
            ParsedImport(source=s, is_relative=s.startswith(".")) for s in (imports or [])
        ),
        export_signature=signature,
        content_hash=digest or f"hash-{path}",
    )


@pytest.fixture
def sample_parsed_files() -> List[ParsedFile]:
    """a.ts -> b.ts -> utils/c.ts, plus an unrelated Button.tsx."""
    return [
        make_parsed("src/a.ts", ["./b", "react"]),
        make_parsed("src/b.ts", ["./utils/c"]),
        make_parsed("src/utils/c.ts"),
        make_parsed("src/components/Button.tsx", ["../utils/c.js"]),
    ]
