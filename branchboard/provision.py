"""
Seeding a freshly created worktree.

Two best-effort steps run after `git worktree add`:
  - copy files the repository ignores (.env, local settings, ...) from the
    main checkout into the worktree
  - run the project's setup script inside the worktree

Neither raises for ordinary failures: problems come back as warning strings
or a non-zero SetupResult so the caller can report them and carry on.
"""
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Union

logger = logging.getLogger(__name__)

MAX_OUTPUT = 2000  # chars of setup-script output kept in notes


def truncate_output(text: str, limit: int = MAX_OUTPUT) -> str:
    """Keep the tail of long output; that is where errors usually are."""
    if not text:
        return ""
    text = text.strip()
    if len(text) <= limit:
        return text
    return f"…[truncated, {len(text) - limit} chars omitted]\n" + text[-limit:]


def safe_path(base: Path, *parts: str) -> Path:
    """
    Resolve a path and assert it stays within base.
    Copy entries like ../../.ssh must not leave the repository.
    """
    resolved = (base / Path(*parts)).resolve()
    base_resolved = base.resolve()
    if resolved != base_resolved and base_resolved not in resolved.parents:
        raise ValueError(f"Path escapes {base}: {os.path.join(*parts)}")
    return resolved


def copy_recursive(src: Union[str, Path], dest: Union[str, Path]) -> List[str]:
    """
    Copy a file or a directory tree from src to dest.

    Destination directories are created as needed and existing files are
    overwritten. Each entry that cannot be copied adds one warning; the
    rest of the tree is still copied.
    """
    src, dest = Path(src), Path(dest)
    warnings: List[str] = []

    if src.is_dir() and not src.is_symlink():
        try:
            dest.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return [f"{src}: cannot create {dest}: {e}"]
        try:
            children = sorted(src.iterdir())
        except OSError as e:
            return [f"{src}: cannot list directory: {e}"]
        for child in children:
            warnings.extend(copy_recursive(child, dest / child.name))
        return warnings

    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        if src.is_symlink():
            if dest.is_symlink() or dest.exists():
                dest.unlink()
            os.symlink(os.readlink(src), dest)
        else:
            shutil.copy2(src, dest)
    except OSError as e:
        warnings.append(f"{src}: {e}")
    return warnings


def copy_configured_files(repo_root: Union[str, Path], worktree: Union[str, Path],
                          paths: Iterable[str]) -> List[str]:
    """Copy repository-relative `paths` into the worktree. Returns warnings."""
    root = Path(repo_root)
    target_root = Path(worktree)
    warnings: List[str] = []

    for rel in paths:
        rel = rel.strip()
        if not rel:
            continue
        try:
            safe_path(root, rel)
        except ValueError as e:
            warnings.append(str(e))
            continue
        # Links that stay inside the repository are copied as links;
        # safe_path has already rejected any that resolve outside it
        src = Path(os.path.normpath(root / rel))
        if not src.exists() and not src.is_symlink():
            warnings.append(f"{rel}: not found in {root}")
            continue
        dest = target_root / src.relative_to(os.path.normpath(root))
        warnings.extend(copy_recursive(src, dest))

    if warnings:
        logger.warning("provision.copy", extra={"meta": {"worktree": str(worktree), "warnings": warnings}})
    return warnings


@dataclass(frozen=True)
class SetupResult:
    """Outcome of the project's setup script."""
    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        """One advisory line plus the captured output for a failed run."""
        if self.ok:
            return f"Setup script succeeded: {self.command}"
        detail = truncate_output(self.stderr) or truncate_output(self.stdout)
        head = f"Setup script failed (exit {self.returncode}): {self.command}"
        return f"{head}\n{detail}" if detail else head


def run_setup_script(script: str, cwd: Union[str, Path]) -> SetupResult:
    """
    Run `script` through the shell with cwd set to the new worktree.

    No timeout: a hanging script blocks the caller.
    """
    logger.info("provision.setup.start", extra={"meta": {"script": script, "cwd": str(cwd)}})
    try:
        proc = subprocess.run(
            script,
            shell=True,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as e:
        result = SetupResult(script, -1, "", str(e))
    else:
        result = SetupResult(script, proc.returncode, proc.stdout, proc.stderr)

    level = logging.INFO if result.ok else logging.WARNING
    logger.log(level, "provision.setup.finish", extra={"meta": {"script": script, "exit_code": result.returncode}})
    return result
