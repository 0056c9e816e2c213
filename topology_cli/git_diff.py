"""Git helpers backed by pygit2.

Paths returned from this module are relative to the *analysed* directory
(which may be a sub-directory of the repository) and use forward slashes,
so they line up with graph node ids.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Set

import pygit2
from pygit2.enums import DeltaStatus, DiffOption, FileStatus

from .config import SKIP_DIRS, SUPPORTED_EXTENSIONS
from .models import CommitInfo, DiffStatus, GitDiffResult

logger = logging.getLogger(__name__)

BASE_BRANCH_CANDIDATES = ("main", "master")


class RepoHandle:
    """An opened repository plus the analysed directory's offset inside it."""

    def __init__(self, repo: pygit2.Repository, prefix: str) -> None:
        self.repo = repo
        self.prefix = prefix

    def to_local(self, git_path: str) -> Optional[str]:
        """Map a repository-relative path into the analysed directory."""
        if not self.prefix:
            return git_path
        if git_path.startswith(self.prefix + "/"):
            return git_path[len(self.prefix) + 1:]
        return None

    def to_git(self, local_path: str) -> str:
        return f"{self.prefix}/{local_path}" if self.prefix else local_path


def open_repo(path: Path) -> Optional[RepoHandle]:
    """Open the repository containing *path*, or ``None`` outside git."""
    try:
        repo_path = pygit2.discover_repository(str(path))
    except (KeyError, ValueError, pygit2.GitError):
        return None
    if repo_path is None:
        return None
    try:
        repo = pygit2.Repository(repo_path)
    except pygit2.GitError as exc:
        logger.warning("Cannot open git repository at %s: %s", repo_path, exc)
        return None
    if repo.workdir is None:
        return None
    workdir = Path(repo.workdir).resolve()
    rel = os.path.relpath(Path(path).resolve(), workdir)
    prefix = "" if rel == "." else Path(rel).as_posix()
    return RepoHandle(repo, prefix)


# ===================================================================
# Branches / refs
# ===================================================================

def current_branch(repo: pygit2.Repository) -> Optional[str]:
    if repo.head_is_unborn or repo.head_is_detached:
        return None
    try:
        return repo.head.shorthand
    except pygit2.GitError:
        return None


def _ref_exists(repo: pygit2.Repository, ref: str) -> bool:
    try:
        repo.revparse_single(ref)
        return True
    except (KeyError, ValueError, pygit2.GitError):
        return False


def detect_base_branch(repo: pygit2.Repository) -> Optional[str]:
    """``main`` then ``master``; local branches first, then ``origin/``."""
    local = set(repo.branches.local)
    for name in BASE_BRANCH_CANDIDATES:
        if name in local:
            return name
    remote = set(repo.branches.remote)
    for name in BASE_BRANCH_CANDIDATES:
        if f"origin/{name}" in remote:
            return f"origin/{name}"
    return None


def list_other_branches(repo: pygit2.Repository, current: str, base: str) -> List[str]:
    return sorted(b for b in repo.branches.local if b not in (current, base))


def _tree_for(repo: pygit2.Repository, ref: str) -> pygit2.Tree:
    return repo.revparse_single(ref).peel(pygit2.Commit).tree


# ===================================================================
# Working-tree diff
# ===================================================================

def _in_skipped_dir(path: str) -> bool:
    return any(part in SKIP_DIRS for part in PurePosixPath(path).parts[:-1])


def _status_from_flags(flags: int) -> Optional[DiffStatus]:
    if flags & (FileStatus.WT_NEW | FileStatus.INDEX_NEW):
        return "ADDED"
    if flags & (FileStatus.WT_DELETED | FileStatus.INDEX_DELETED):
        return "DELETED"
    if flags & (
        FileStatus.WT_MODIFIED | FileStatus.INDEX_MODIFIED
        | FileStatus.WT_RENAMED | FileStatus.INDEX_RENAMED
        | FileStatus.WT_TYPECHANGE | FileStatus.INDEX_TYPECHANGE
    ):
        return "MODIFIED"
    return None


_DELTA_STATUS: Dict[int, DiffStatus] = {
    DeltaStatus.ADDED: "ADDED",
    DeltaStatus.UNTRACKED: "ADDED",
    DeltaStatus.DELETED: "DELETED",
    DeltaStatus.MODIFIED: "MODIFIED",
    DeltaStatus.RENAMED: "MODIFIED",
    DeltaStatus.TYPECHANGE: "MODIFIED",
}


def get_git_diff(base_path: Path, base_branch: Optional[str] = None) -> GitDiffResult:
    """Per-file status of the working tree.

    On the base branch only uncommitted changes are reported; on any other
    branch the working tree is compared against the base branch tree.
    Outside a repository (or on any git failure) an empty result is returned.
    """
    handle = open_repo(base_path)
    if handle is None:
        return GitDiffResult()
    repo = handle.repo

    try:
        branch = current_branch(repo)
        base = base_branch or detect_base_branch(repo)

        status_map = repo.status()
        uncommitted = {
            path: flags for path, flags in status_map.items()
            if not flags & FileStatus.IGNORED and flags != FileStatus.CURRENT
            and not _in_skipped_dir(path)
        }
        file_status: Dict[str, DiffStatus] = {}

        if base is None or branch == base or not _ref_exists(repo, base):
            for git_path, flags in uncommitted.items():
                status = _status_from_flags(flags)
                local = handle.to_local(git_path)
                if status is not None and local is not None:
                    file_status[local] = status
        else:
            diff = _tree_for(repo, base).diff_to_workdir(
                DiffOption.INCLUDE_UNTRACKED | DiffOption.RECURSE_UNTRACKED_DIRS
            )
            for delta in diff.deltas:
                status = _DELTA_STATUS.get(delta.status)
                if status is None:
                    continue
                git_path = delta.old_file.path if status == "DELETED" else delta.new_file.path
                local = handle.to_local(git_path)
                if local is not None:
                    file_status[local] = status

        return GitDiffResult(
            file_status=file_status,
            base_branch=base,
            current_branch=branch,
            has_uncommitted_changes=bool(uncommitted),
        )
    except (KeyError, ValueError, pygit2.GitError) as exc:
        logger.warning("git diff failed for %s: %s", base_path, exc)
        return GitDiffResult()


def get_file_at_ref(base_path: Path, file_path: str, ref: str) -> Optional[str]:
    """Content of *file_path* at *ref*, or ``None`` if absent there."""
    handle = open_repo(base_path)
    if handle is None:
        return None
    try:
        tree = _tree_for(handle.repo, ref)
        entry = tree[handle.to_git(file_path)]
    except (KeyError, ValueError, pygit2.GitError):
        return None
    blob = handle.repo[entry.id]
    if not isinstance(blob, pygit2.Blob):
        return None
    return blob.data.decode("utf-8", errors="replace")


def get_current_commit_info(base_path: Path) -> Optional[CommitInfo]:
    handle = open_repo(base_path)
    if handle is None or handle.repo.head_is_unborn:
        return None
    repo = handle.repo
    try:
        commit = repo.head.peel(pygit2.Commit)
    except (KeyError, ValueError, pygit2.GitError):
        return None
    message = commit.message.strip().splitlines()[0] if commit.message.strip() else ""
    return CommitInfo(hash=str(commit.id)[:7], message=message, branch=current_branch(repo))


# ===================================================================
# Branch-to-branch
# ===================================================================

def is_tracked_source(path: str) -> bool:
    pure = PurePosixPath(path)
    if pure.suffix.lower() not in SUPPORTED_EXTENSIONS:
        return False
    return not _in_skipped_dir(path)


def get_branch_modified_files(handle: RepoHandle, branch: str, base: str) -> List[str]:
    """Source files whose blob differs between *base* and *branch*.

    Only tree object ids are compared; no file content is read.  Added,
    modified and deleted files all count.
    """
    repo = handle.repo
    try:
        base_tree = _tree_for(repo, base)
        branch_tree = _tree_for(repo, branch)
    except (KeyError, ValueError, pygit2.GitError):
        return []

    modified: List[str] = []
    seen: Set[str] = set()
    for delta in base_tree.diff_to_tree(branch_tree).deltas:
        git_path = delta.new_file.path or delta.old_file.path
        local = handle.to_local(git_path)
        if local is None or local in seen or not is_tracked_source(local):
            continue
        seen.add(local)
        modified.append(local)
    return modified
