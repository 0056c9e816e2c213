"""Tests for the pygit2-backed git helpers."""

from pathlib import Path

from topology_cli.git_diff import (
    detect_base_branch,
    get_branch_modified_files,
    get_current_commit_info,
    get_file_at_ref,
    get_git_diff,
    open_repo,
)

from conftest import GitRepoBuilder

FILES = {
    "src/a.ts": "import { b } from './b';\n",
    "src/b.ts": "export const b = 1;\n",
    "src/c.ts": "export const c = 1;\n",
    "README.md": "docs\n",
}


class TestGetGitDiff:
    """Tests for get_git_diff."""

    def test_outside_repository(self, temp_dir: Path):
        """A plain directory yields an empty diff rather than an error."""
        result = get_git_diff(temp_dir)
        assert result.file_status == {}
        assert result.base_branch is None
        assert not result.has_uncommitted_changes

    def test_uncommitted_changes_on_base_branch(self, git_repo):
        """On main, only working-tree changes are reported."""
        builder = git_repo(FILES)
        builder.write({"src/b.ts": "export const b = 2;\n", "src/new.ts": "x\n"})

        result = get_git_diff(builder.root)

        assert result.current_branch == "main"
        assert result.base_branch == "main"
        assert result.has_uncommitted_changes
        assert result.file_status["src/b.ts"] == "MODIFIED"
        assert result.file_status["src/new.ts"] == "ADDED"
        assert "src/a.ts" not in result.file_status

    def test_feature_branch_against_base(self, git_repo):
        """On a feature branch committed changes count as well."""
        builder = git_repo(FILES)
        builder.branch("feature")
        builder.write({"src/b.ts": "export const b = 2;\n"}).delete("src/c.ts").commit("feature work")
        builder.write({"src/d.ts": "export const d = 1;\n"})

        result = get_git_diff(builder.root)

        assert result.current_branch == "feature"
        assert result.base_branch == "main"
        assert result.file_status == {
            "src/b.ts": "MODIFIED",
            "src/c.ts": "DELETED",
            "src/d.ts": "ADDED",
        }

    def test_explicit_base_branch(self, git_repo):
        builder = git_repo(FILES)
        builder.branch("develop")
        builder.write({"src/a.ts": "changed\n"}).commit("develop work")
        builder.branch("feature")

        result = get_git_diff(builder.root, base_branch="develop")
        assert result.base_branch == "develop"
        assert result.file_status == {}

    def test_paths_relative_to_subdirectory(self, git_repo):
        builder = git_repo(FILES)
        builder.write({"src/b.ts": "export const b = 2;\n", "README.md": "changed\n"})

        result = get_git_diff(builder.root / "src")
        assert result.file_status == {"b.ts": "MODIFIED"}

    def test_cache_directory_is_ignored(self, git_repo):
        builder = git_repo(FILES)
        builder.write({".topology/cache.db": "binary"})

        result = get_git_diff(builder.root)
        assert not any(p.startswith(".topology/") for p in result.file_status)


class TestRefs:
    """Tests for ref lookups."""

    def test_file_at_ref(self, git_repo):
        builder = git_repo(FILES)
        builder.write({"src/b.ts": "export const b = 2;\n"})

        assert get_file_at_ref(builder.root, "src/b.ts", "main") == "export const b = 1;\n"
        assert get_file_at_ref(builder.root, "src/missing.ts", "main") is None
        assert get_file_at_ref(builder.root, "src/b.ts", "no-such-ref") is None

    def test_file_at_ref_from_subdirectory(self, git_repo):
        builder = git_repo(FILES)
        assert get_file_at_ref(builder.root / "src", "b.ts", "main") == "export const b = 1;\n"

    def test_current_commit_info(self, git_repo):
        builder = git_repo(FILES)
        builder.write({"src/a.ts": "x\n"}).commit("Second commit\n\nbody")

        info = get_current_commit_info(builder.root)
        assert info.message == "Second commit"
        assert info.branch == "main"
        assert len(info.hash) == 7

    def test_detect_base_branch_prefers_main(self, git_repo):
        builder = git_repo(FILES)
        builder.branch("master")
        assert detect_base_branch(builder.repo) == "main"

    def test_detect_base_branch_master(self, temp_dir: Path):
        builder = GitRepoBuilder(temp_dir)
        builder.repo.set_head("refs/heads/master")
        builder.write(FILES).commit("initial")
        assert detect_base_branch(builder.repo) == "master"


class TestBranchModifiedFiles:
    """Tests for tree-to-tree comparison."""

    def test_only_source_files_are_listed(self, git_repo):
        builder = git_repo(FILES)
        builder.branch("feature")
        builder.write({"src/a.ts": "changed\n", "README.md": "changed\n"})
        builder.delete("src/c.ts").commit("feature")

        handle = open_repo(builder.root)
        assert sorted(get_branch_modified_files(handle, "feature", "main")) == ["src/a.ts", "src/c.ts"]

    def test_unknown_branch(self, git_repo):
        builder = git_repo(FILES)
        handle = open_repo(builder.root)
        assert get_branch_modified_files(handle, "ghost", "main") == []
