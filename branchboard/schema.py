"""
Board schema.

Task lifecycle:
  To Do → In Progress → In Review → Done
  Cancelled is reachable from any non-terminal state,
  and In Progress can be sent back to To Do.

Task and Board are immutable values: every mutation produces a new Board
which the store rewrites in full.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import TaskNotFound

BOARD_VERSION = 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a trailing Z."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return utc_now()
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TaskStatus(Enum):
    """Columns of the board, in display order."""
    TODO = "To Do"
    IN_PROGRESS = "In Progress"
    IN_REVIEW = "In Review"
    DONE = "Done"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.CANCELLED)

    @classmethod
    def from_str(cls, value: str) -> "TaskStatus":
        """Accept the stored value, the member name, or a short alias."""
        key = value.strip()
        for status in cls:
            if key == status.value:
                return status
        key = key.lower().replace(" ", "_").replace("-", "_")
        aliases = {
            "todo": cls.TODO,
            "to_do": cls.TODO,
            "progress": cls.IN_PROGRESS,
            "in_progress": cls.IN_PROGRESS,
            "review": cls.IN_REVIEW,
            "in_review": cls.IN_REVIEW,
            "done": cls.DONE,
            "cancelled": cls.CANCELLED,
            "canceled": cls.CANCELLED,
        }
        if key in aliases:
            return aliases[key]
        raise ValueError(f"Unknown task status: {value!r}")


@dataclass(frozen=True)
class Task:
    """One unit of work on the board."""

    id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    # Present only while the task owns git resources
    branch: Optional[str] = None
    worktree_path: Optional[str] = None
    base_branch: Optional[str] = None

    def evolve(self, **changes: Any) -> "Task":
        """Copy with `changes` applied and `updated_at` refreshed."""
        changes.setdefault("updated_at", utc_now())
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the on-disk key names. Unset optional fields are omitted."""
        data: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "branch": self.branch,
            "worktreePath": self.worktree_path,
            "baseBranch": self.base_branch,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        try:
            status = TaskStatus.from_str(str(data.get("status", "")))
        except ValueError:
            status = TaskStatus.TODO

        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            description=data.get("description"),
            status=status,
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
            branch=data.get("branch") or None,
            worktree_path=data.get("worktreePath") or None,
            base_branch=data.get("baseBranch") or None,
        )


@dataclass(frozen=True)
class Board:
    """The persisted aggregate: a schema version and the ordered task list."""

    version: int = BOARD_VERSION
    tasks: Tuple[Task, ...] = ()

    @classmethod
    def empty(cls) -> "Board":
        return cls(version=BOARD_VERSION, tasks=())

    def ids(self) -> List[str]:
        return [t.id for t in self.tasks]

    def get(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFound(f"No task with id {task_id}")
        return task

    def find(self, id_prefix: str) -> Task:
        """Resolve a full id or a unique id prefix."""
        exact = self.get(id_prefix)
        if exact is not None:
            return exact
        matches = [t for t in self.tasks if id_prefix and t.id.startswith(id_prefix)]
        if not matches:
            raise TaskNotFound(f"No task matches {id_prefix!r}")
        if len(matches) > 1:
            ids = ", ".join(t.id for t in matches)
            raise TaskNotFound(f"Task id {id_prefix!r} is ambiguous: {ids}")
        return matches[0]

    def with_task(self, task: Task) -> "Board":
        return replace(self, tasks=self.tasks + (task,))

    def replace_task(self, task: Task) -> "Board":
        self.require(task.id)
        return replace(self, tasks=tuple(task if t.id == task.id else t for t in self.tasks))

    def without_task(self, task_id: str) -> "Board":
        self.require(task_id)
        return replace(self, tasks=tuple(t for t in self.tasks if t.id != task_id))

    def tasks_by_status(self) -> Dict[TaskStatus, List[Task]]:
        """Group tasks into columns; every status is present, order is kept."""
        grouped: Dict[TaskStatus, List[Task]] = {status: [] for status in TaskStatus}
        for task in self.tasks:
            grouped[task.status].append(task)
        return grouped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "tasks": [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Board":
        raw_tasks: Iterable[Dict[str, Any]] = data.get("tasks") or []
        tasks = tuple(Task.from_dict(raw) for raw in raw_tasks if isinstance(raw, dict) and raw.get("id"))
        return cls(version=int(data.get("version", BOARD_VERSION)), tasks=tasks)
