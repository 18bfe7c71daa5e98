"""
Git adapter.

Every operation shells out to `git -C <dir> ...` and gets back a GitResult.
Queries (branch_exists, show_toplevel, ...) report failure as a value.
Mutating commands raise GitError carrying git's stderr.

Also resolves the repository identity: a path that is the same for every
worktree of one repository, used to key per-repo storage.
"""
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from .errors import GitError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

GIT_NOT_FOUND = 127


@dataclass(frozen=True)
class GitResult:
    """Exit status and captured output of one git invocation."""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return self.stdout.strip()


class GitClient:
    """Thin, typed wrapper over the git subcommands the board needs."""

    def __init__(self, executable: str = "git"):
        self.executable = executable

    def run(self, args: Sequence[str], cwd: PathLike) -> GitResult:
        """Run git in `cwd`. Never raises for a non-zero exit."""
        cmd = [self.executable, "-C", str(cwd), *args]
        logger.debug("git %s", " ".join(args), extra={"meta": {"cwd": str(cwd)}})
        try:
            # git prints raw bytes for paths and commit messages
            proc = subprocess.run(cmd, capture_output=True, text=True, encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return GitResult(GIT_NOT_FOUND, "", f"{self.executable}: command not found")
        except OSError as e:
            return GitResult(GIT_NOT_FOUND, "", str(e))
        return GitResult(proc.returncode, proc.stdout, proc.stderr)

    # ── Queries ──────────────────────────────────────────────────────────

    def current_branch(self, cwd: PathLike) -> str:
        result = self.run(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
        if not result.ok:
            raise GitError("git rev-parse --abbrev-ref HEAD failed", result.stderr)
        return result.output

    def branch_exists(self, name: str, cwd: PathLike) -> bool:
        return self.run(["rev-parse", "--verify", "--quiet", name], cwd).ok

    def rev_parse(self, ref: str, cwd: PathLike) -> Optional[str]:
        result = self.run(["rev-parse", "--verify", "--quiet", ref], cwd)
        return result.output if result.ok else None

    def show_toplevel(self, cwd: PathLike) -> Optional[str]:
        result = self.run(["rev-parse", "--show-toplevel"], cwd)
        return result.output if result.ok and result.output else None

    def git_common_dir(self, cwd: PathLike) -> Optional[str]:
        result = self.run(["rev-parse", "--git-common-dir"], cwd)
        return result.output if result.ok and result.output else None

    def list_worktrees(self, repo_dir: PathLike) -> List[Dict[str, str]]:
        """Parse `git worktree list --porcelain`. Empty list if git fails."""
        result = self.run(["worktree", "list", "--porcelain"], repo_dir)
        if not result.ok:
            return []

        worktrees: List[Dict[str, str]] = []
        current: Dict[str, str] = {}
        for line in result.stdout.splitlines():
            if not line.strip():
                if current:
                    worktrees.append(current)
                    current = {}
                continue
            key, _, value = line.partition(" ")
            if key == "branch" and value.startswith("refs/heads/"):
                value = value[len("refs/heads/"):]
            current[key] = value
        if current:
            worktrees.append(current)
        return worktrees

    # ── Branches ─────────────────────────────────────────────────────────

    def create_branch(self, name: str, base: str, cwd: PathLike) -> bool:
        """Create `name` at `base`. Returns False if it already existed."""
        if self.branch_exists(name, cwd):
            return False
        result = self.run(["branch", name, base], cwd)
        if not result.ok:
            raise GitError(f"git branch {name} {base} failed", result.stderr)
        logger.info("git.branch.create", extra={"meta": {"name": name, "base": base, "cwd": str(cwd)}})
        return True

    def delete_branch(self, name: str, cwd: PathLike) -> None:
        result = self.run(["branch", "-D", name], cwd)
        if not result.ok:
            raise GitError(f"git branch -D {name} failed", result.stderr)
        logger.info("git.branch.delete", extra={"meta": {"name": name, "cwd": str(cwd)}})

    def checkout(self, ref: str, cwd: PathLike) -> None:
        result = self.run(["checkout", ref], cwd)
        if not result.ok:
            raise GitError(f"git checkout {ref} failed", result.stderr)

    # ── Worktrees ────────────────────────────────────────────────────────

    def prune_worktrees(self, repo_dir: PathLike) -> None:
        """Drop git metadata for worktrees whose directory is gone."""
        self.run(["worktree", "prune"], repo_dir)

    def is_registered_worktree(self, path: PathLike, repo_dir: PathLike) -> bool:
        target = os.path.realpath(str(path))
        return any(
            os.path.realpath(wt.get("worktree", "")) == target
            for wt in self.list_worktrees(repo_dir)
        )

    def add_worktree(self, path: PathLike, branch: str, repo_dir: PathLike) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        result = self.run(["worktree", "add", str(path), branch], repo_dir)
        if not result.ok:
            raise GitError(f"git worktree add {path} failed", result.stderr)
        logger.info("git.worktree.add", extra={"meta": {"dir": str(path), "branch": branch, "cwd": str(repo_dir)}})

    def remove_worktree(self, path: PathLike, repo_dir: PathLike) -> bool:
        """
        Remove a worktree. Returns True when git removed it.

        If git refuses (stale metadata, already-moved directory, ...) the
        directory is deleted directly so cleanup can never get stuck, and
        False is returned.
        """
        self.prune_worktrees(repo_dir)
        result = self.run(["worktree", "remove", str(path), "--force"], repo_dir)
        if result.ok:
            logger.info("git.worktree.remove", extra={"meta": {"dir": str(path), "cwd": str(repo_dir)}})
            return True

        logger.warning(
            "git.worktree.remove failed, deleting directory",
            extra={"meta": {"dir": str(path), "stderr": result.stderr.strip()}},
        )
        shutil.rmtree(path, ignore_errors=True)
        self.prune_worktrees(repo_dir)
        return False

    # ── Merge ────────────────────────────────────────────────────────────

    def merge_branch(self, base: str, head: str, cwd: PathLike) -> None:
        """
        Merge `head` into `base` with a merge commit.

        On failure the merge is aborted and the original branch restored
        before GitError is raised, so the repository is never left
        mid-merge or on the wrong branch.
        """
        original = self.current_branch(cwd)
        if original != base:
            self.checkout(base, cwd)

        result = self.run(["merge", "--no-ff", "--no-edit", head], cwd)
        if not result.ok:
            self.run(["merge", "--abort"], cwd)
            if original != base:
                self.run(["checkout", original], cwd)
            logger.error("git.merge failed", extra={"meta": {"base": base, "head": head, "stderr": result.stderr.strip()}})
            # git reports conflicts on stdout
            raise GitError(f"git merge {head} into {base} failed", result.stderr or result.stdout)

        if original != base:
            self.run(["checkout", original], cwd)
        logger.info("git.merge", extra={"meta": {"base": base, "head": head, "cwd": str(cwd)}})


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Repository identity
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _strip_git_dir(path: str) -> str:
    path = path.rstrip(os.sep) or path
    if os.path.basename(path) == ".git":
        return os.path.dirname(path)
    return path


def resolve_repository_root(cwd: PathLike, git: Optional[GitClient] = None) -> str:
    """
    Path shared by every worktree of the repository containing `cwd`.

    Order: the common git dir (minus a trailing .git), then the worktree's
    top-level directory, then `cwd` itself.
    """
    git = git or GitClient()
    cwd = str(cwd)

    common = git.git_common_dir(cwd)
    if common:
        if os.path.isabs(common):
            return _strip_git_dir(os.path.normpath(common))
        base = git.show_toplevel(cwd) or cwd
        return _strip_git_dir(os.path.normpath(os.path.join(base, common)))

    top = git.show_toplevel(cwd)
    if top:
        return top
    return cwd


def sanitize_path_for_dir(path: str) -> str:
    """Turn an absolute path into a single directory-safe name."""
    return path.replace("/", "_").replace("\\", "_").replace(":", "_")
