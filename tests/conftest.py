"""Shared fixtures: throwaway git repositories and an isolated storage root."""

import shutil
import subprocess
from pathlib import Path

import pytest

from branchboard.config import GlobalConfig, ProjectConfig
from branchboard.engine import TaskEngine
from branchboard.git import GitClient
from branchboard.store import BoardStore

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(cwd, *args) -> str:
    proc = subprocess.run(["git", "-C", str(cwd), *args], capture_output=True, text=True, check=True)
    return proc.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str = None) -> None:
    (repo / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message or f"update {name}")


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep HOME, storage root and git identity away from the real user."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("BRANCHBOARD_HOME", str(tmp_path / "bbhome"))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.delenv("BRANCHBOARD_LOG_LEVEL", raising=False)


@pytest.fixture
def repo(tmp_path) -> Path:
    """A git repository on `main` with one commit."""
    path = tmp_path / "repo"
    path.mkdir()
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    commit_file(path, "README.md", "hello\n", "initial")
    return path


@pytest.fixture
def storage(tmp_path) -> Path:
    return tmp_path / "bbhome"


@pytest.fixture
def worktree_root(tmp_path) -> Path:
    return tmp_path / "worktrees"


@pytest.fixture
def make_engine(storage, worktree_root):
    """Build a TaskEngine on a repo with test-friendly config."""

    def _make(repo_dir, prefix="vd", project_config=None, git_client=None, **kwargs):
        client = git_client or GitClient()
        store = BoardStore(root=storage)
        config = GlobalConfig(branch_prefix=prefix, tmp_root=str(worktree_root), editor=None)
        return TaskEngine(
            repo_dir,
            store=store,
            git=client,
            config=config,
            project_config=project_config or ProjectConfig(),
            **kwargs,
        )

    return _make
