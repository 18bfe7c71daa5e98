"""
Board storage backend (JSON file).

One board per repository, stored at
    <storage root>/projects/<repo key>/board.json
where <repo key> is derived from a path that is identical for every worktree
of the repository, so all worktrees see the same board.

The store only reads and writes whole boards; it never edits tasks itself.
"""
import json
import logging
import os
from pathlib import Path
from typing import Callable, Optional, Union

from .config import project_storage_dir, storage_root
from .git import resolve_repository_root
from .schema import Board

logger = logging.getLogger(__name__)

BOARD_FILENAME = "board.json"

RepoResolver = Callable[[str], str]


class BoardStore:
    """JSON-file store for boards, keyed by repository identity."""

    def __init__(self, root: Optional[Union[str, Path]] = None,
                 resolve_root: RepoResolver = resolve_repository_root):
        """Initialize store. `root` defaults to the configured storage root."""
        self.root = Path(root) if root else storage_root()
        self.resolve_root = resolve_root

    def repo_root(self, repo_dir: Union[str, Path]) -> str:
        return self.resolve_root(str(repo_dir))

    def project_dir(self, repo_dir: Union[str, Path]) -> Path:
        return project_storage_dir(self.repo_root(repo_dir), self.root)

    def board_path(self, repo_dir: Union[str, Path]) -> Path:
        return self.project_dir(repo_dir) / BOARD_FILENAME

    def load(self, repo_dir: Union[str, Path]) -> Board:
        """
        Read the board for `repo_dir`.

        A missing file yields a new empty board which is saved right away.
        An unparseable file is moved aside to board.json.corrupt first.
        """
        path = self.board_path(repo_dir)
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return Board.from_dict(json.load(f))
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Unreadable board {path}: {e}", extra={"meta": {"path": str(path)}})
                self._set_aside(path)

        board = Board.empty()
        self.save(board, repo_dir)
        logger.info("board.init", extra={"meta": {"path": str(path)}})
        return board

    def save(self, board: Board, repo_dir: Union[str, Path]) -> Path:
        """Write the whole board (atomic). Errors propagate to the caller."""
        path = self.board_path(repo_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = path.with_suffix(".json.tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(board.to_dict(), f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp_file, path)
        return path

    @staticmethod
    def _set_aside(path: Path) -> None:
        try:
            os.replace(path, path.with_name(path.name + ".corrupt"))
        except OSError as e:
            logger.error(f"Could not move corrupt board {path} aside: {e}")
