"""
Exceptions raised by the board, the git adapter and the lifecycle engine.
"""
from typing import Optional


class BranchboardError(Exception):
    """Base class for every error this package raises on purpose."""
    pass


class PreconditionError(BranchboardError):
    """Raised when a command is not allowed for the task's current state."""
    pass


class TaskNotFound(PreconditionError):
    """Raised when a task id (or id prefix) does not match exactly one task."""
    pass


class ConfigError(BranchboardError):
    """Raised by the strict config loaders when a file cannot be parsed."""
    pass


class GitError(BranchboardError):
    """Raised when a git command fails unexpectedly. Carries git's stderr."""

    def __init__(self, message: str, stderr: Optional[str] = None):
        self.stderr = (stderr or "").strip()
        if self.stderr:
            message = f"{message}: {self.stderr}"
        super().__init__(message)
