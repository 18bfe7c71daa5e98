"""
Task lifecycle engine.

Callers build a command (StartTask, CancelTask, ...) and hand it to
TaskEngine.apply(). The engine loads the board, checks the transition table,
runs the rule's side-effect steps, then writes the new board and returns it
together with any advisory notes.

Each step declares a policy:
    BLOCKING  a failure aborts the transition; the board is not touched
    ADVISORY  a failure becomes a note; the transition still happens

Only the steps leading up to a usable branch/worktree, and the merge itself,
are blocking. Cleanup (worktree removal, branch deletion) is advisory so a
git hiccup can never trap a task in a half-finished state.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, ClassVar, Container, Dict, List, Optional, Tuple, Union

from .config import GlobalConfig, ProjectConfig
from .errors import GitError, PreconditionError
from .git import GitClient, resolve_repository_root
from .naming import branch_name, short_id, worktree_dir
from .provision import copy_configured_files, run_setup_script
from .schema import Board, Task, TaskStatus, utc_now
from .store import BoardStore

logger = logging.getLogger(__name__)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Commands
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Action(Enum):
    """Status-changing commands, keyed into the transition table."""
    START = "start"
    REVIEW = "review"
    BACK_TO_TODO = "move back to To Do"
    COMPLETE = "complete"
    MERGE = "merge"
    CANCEL = "cancel"


@dataclass(frozen=True)
class CreateTask:
    title: str
    description: Optional[str] = None


@dataclass(frozen=True)
class TransitionCommand:
    task_id: str
    action: ClassVar[Action]


@dataclass(frozen=True)
class StartTask(TransitionCommand):
    action: ClassVar[Action] = Action.START


@dataclass(frozen=True)
class MoveToReview(TransitionCommand):
    action: ClassVar[Action] = Action.REVIEW


@dataclass(frozen=True)
class MoveToTodo(TransitionCommand):
    action: ClassVar[Action] = Action.BACK_TO_TODO


@dataclass(frozen=True)
class CompleteTask(TransitionCommand):
    action: ClassVar[Action] = Action.COMPLETE


@dataclass(frozen=True)
class MergeAndComplete(TransitionCommand):
    action: ClassVar[Action] = Action.MERGE


@dataclass(frozen=True)
class CancelTask(TransitionCommand):
    action: ClassVar[Action] = Action.CANCEL


@dataclass(frozen=True)
class DeleteTask:
    task_id: str


@dataclass(frozen=True)
class EditTitle:
    task_id: str
    title: str


@dataclass(frozen=True)
class EditDescription:
    task_id: str
    description: Optional[str]


Command = Union[CreateTask, TransitionCommand, DeleteTask, EditTitle, EditDescription]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Transition table
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Policy(Enum):
    BLOCKING = "blocking"
    ADVISORY = "advisory"


Step = Tuple[str, Policy]


@dataclass(frozen=True)
class Rule:
    """Target status, ordered side-effect steps, and fields cleared on success."""
    target: TaskStatus
    steps: Tuple[Step, ...] = ()
    clears: Tuple[str, ...] = ()


_B, _A = Policy.BLOCKING, Policy.ADVISORY

START_STEPS: Tuple[Step, ...] = (
    ("plan", _B),
    ("create_branch", _B),
    ("add_worktree", _B),
    ("copy_files", _A),
    ("setup_script", _A),
)
RECLAIM_STEPS: Tuple[Step, ...] = (
    ("remove_worktree", _A),
    ("switch_off_branch", _A),
    ("delete_branch", _A),
)
MERGE_STEPS: Tuple[Step, ...] = (("require_branches", _B), ("merge", _B)) + RECLAIM_STEPS

_OPEN = (TaskStatus.TODO, TaskStatus.IN_PROGRESS, TaskStatus.IN_REVIEW)


def _build_transitions() -> Dict[Tuple[Action, TaskStatus], Rule]:
    table = {
        (Action.START, TaskStatus.TODO): Rule(TaskStatus.IN_PROGRESS, START_STEPS),
        (Action.REVIEW, TaskStatus.IN_PROGRESS): Rule(TaskStatus.IN_REVIEW),
        # Recovery path: the worktree and branch stay where they are
        (Action.BACK_TO_TODO, TaskStatus.IN_PROGRESS): Rule(TaskStatus.TODO),
    }
    for status in (TaskStatus.IN_PROGRESS, TaskStatus.IN_REVIEW):
        table[(Action.MERGE, status)] = Rule(TaskStatus.DONE, MERGE_STEPS, ("worktree_path", "branch"))
    for status in _OPEN:
        # branch is kept on Done as a record of where the work happened
        table[(Action.COMPLETE, status)] = Rule(TaskStatus.DONE, (("remove_worktree", _A),), ("worktree_path",))
        table[(Action.CANCEL, status)] = Rule(TaskStatus.CANCELLED, RECLAIM_STEPS, ("worktree_path", "branch"))
    return table


TRANSITIONS: Dict[Tuple[Action, TaskStatus], Rule] = _build_transitions()


def allowed_actions(status: TaskStatus) -> List[Action]:
    return [action for (action, source) in TRANSITIONS if source is status]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Step outcomes and results
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass(frozen=True)
class StepOutcome:
    """Ok, Warning(notes) or Fatal(error) for one side-effect step."""
    kind: str
    notes: Tuple[str, ...] = ()
    error: Optional[Exception] = None

    OK: ClassVar[str] = "ok"
    WARNING: ClassVar[str] = "warning"
    FATAL: ClassVar[str] = "fatal"

    @classmethod
    def ok(cls) -> "StepOutcome":
        return cls(cls.OK)

    @classmethod
    def warning(cls, *notes: str) -> "StepOutcome":
        return cls(cls.WARNING, tuple(notes))

    @classmethod
    def fatal(cls, error: Exception) -> "StepOutcome":
        return cls(cls.FATAL, (str(error),), error)

    @property
    def is_fatal(self) -> bool:
        return self.kind == self.FATAL


@dataclass
class StepContext:
    """Mutable scratch space shared by the steps of one transition."""
    task: Task
    changes: Dict[str, Any] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)

    def get(self, name: str) -> Any:
        """A pending change wins over the task's current value."""
        if name in self.changes:
            return self.changes[name]
        return getattr(self.task, name)


@dataclass(frozen=True)
class TransitionResult:
    board: Board
    task: Task
    message: str
    notes: Tuple[str, ...] = ()

    def summary(self) -> str:
        if not self.notes:
            return self.message
        return "\n".join([self.message] + [f"  ! {note}" for note in self.notes])


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Engine
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TaskEngine:
    """Owns every board mutation for one repository."""

    def __init__(
        self,
        repo_dir: Union[str, Path],
        store: Optional[BoardStore] = None,
        git: Optional[GitClient] = None,
        config: Optional[GlobalConfig] = None,
        project_config: Optional[ProjectConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Optional[Callable[[Container[str]], str]] = None,
    ):
        self.repo_dir = str(repo_dir)
        self.git = git or GitClient()
        self.store = store or BoardStore(resolve_root=lambda cwd: resolve_repository_root(cwd, self.git))
        self.repo_root = self.store.repo_root(self.repo_dir)
        self.config = config or GlobalConfig.load(self.store.root)
        self.project_config = project_config or ProjectConfig.load(self.repo_root, self.store.root)
        self.clock = clock
        self.id_factory = id_factory or (lambda taken: short_id(taken=taken))

    # ── Public API ───────────────────────────────────────────────────────

    def board(self) -> Board:
        return self.store.load(self.repo_dir)

    def find(self, id_prefix: str) -> Task:
        return self.board().find(id_prefix)

    def apply(self, command: Command) -> TransitionResult:
        """Run one command against the persisted board."""
        if isinstance(command, TransitionCommand):
            return self._transition(command.task_id, command.action)

        handlers = {
            CreateTask: self._create,
            DeleteTask: self._delete,
            EditTitle: self._edit_title,
            EditDescription: self._edit_description,
        }
        handler = handlers.get(type(command))
        if handler is None:
            raise TypeError(f"Unsupported command: {command!r}")
        return handler(command)

    # ── Non-status commands ──────────────────────────────────────────────

    def _create(self, command: CreateTask) -> TransitionResult:
        title = (command.title or "").strip()
        if not title:
            raise PreconditionError("Task title must not be empty")

        board = self.board()
        now = self.clock()
        task = Task(
            id=self.id_factory(set(board.ids())),
            title=title,
            description=command.description or None,
            status=TaskStatus.TODO,
            created_at=now,
            updated_at=now,
        )
        board = board.with_task(task)
        self.store.save(board, self.repo_dir)
        logger.info("task.create", extra={"meta": {"id": task.id, "title": title}})
        return TransitionResult(board, task, f"Created {task.id}: {title}")

    def _edit_title(self, command: EditTitle) -> TransitionResult:
        title = (command.title or "").strip()
        if not title:
            raise PreconditionError("Task title must not be empty")
        return self._edit(command.task_id, title=title)

    def _edit_description(self, command: EditDescription) -> TransitionResult:
        return self._edit(command.task_id, description=command.description or None)

    def _edit(self, task_id: str, **changes: Any) -> TransitionResult:
        board = self.board()
        task = board.require(task_id).evolve(updated_at=self.clock(), **changes)
        board = board.replace_task(task)
        self.store.save(board, self.repo_dir)
        logger.info("task.edit", extra={"meta": {"id": task_id, "fields": sorted(changes)}})
        return TransitionResult(board, task, f"Updated {task_id}")

    def _delete(self, command: DeleteTask) -> TransitionResult:
        board = self.board()
        task = board.require(command.task_id)
        ctx = StepContext(task)
        self._run_steps(RECLAIM_STEPS, ctx)

        board = board.without_task(task.id)
        self.store.save(board, self.repo_dir)
        logger.info("task.delete", extra={"meta": {"id": task.id, "notes": ctx.notes}})
        return TransitionResult(board, task, f"Deleted {task.id}", tuple(ctx.notes))

    # ── Status transitions ───────────────────────────────────────────────

    def _transition(self, task_id: str, action: Action) -> TransitionResult:
        board = self.board()
        task = board.require(task_id)

        rule = TRANSITIONS.get((action, task.status))
        if rule is None:
            if action is Action.START:
                raise PreconditionError("Start is only available from To Do")
            raise PreconditionError(f"Cannot {action.value} {task.id}: task is {task.status.value}")

        ctx = StepContext(task)
        self._run_steps(rule.steps, ctx)

        changes = dict(ctx.changes)
        for name in rule.clears:
            changes[name] = None
        updated = task.evolve(status=rule.target, updated_at=self.clock(), **changes)

        board = board.replace_task(updated)
        self.store.save(board, self.repo_dir)
        logger.info(
            f"task.{action.name.lower()}",
            extra={"meta": {"id": task.id, "from": task.status.value, "to": rule.target.value, "notes": ctx.notes}},
        )
        return TransitionResult(board, updated, self._message(action, task, updated), tuple(ctx.notes))

    def _message(self, action: Action, before: Task, after: Task) -> str:
        if action is Action.START:
            return f"Started {after.id} on {after.branch}"
        if action is Action.MERGE:
            return f"Merged {before.branch} into {before.base_branch}; marked {after.id} as Done"
        if action is Action.CANCEL:
            return f"Cancelled {after.id}"
        if action is Action.COMPLETE:
            return f"Marked {after.id} as Done"
        return f"Moved {after.id} to {after.status.value}"

    def _run_steps(self, steps: Tuple[Step, ...], ctx: StepContext) -> None:
        """Run steps in order. A fatal outcome of a blocking step is re-raised."""
        for name, policy in steps:
            outcome = self._run_step(name, ctx)
            if outcome.is_fatal:
                if policy is Policy.BLOCKING:
                    logger.error(f"step.{name} failed", extra={"meta": {"id": ctx.task.id, "error": str(outcome.error)}})
                    raise outcome.error
                outcome = StepOutcome.warning(f"{name.replace('_', ' ')}: {outcome.error}")
            ctx.notes.extend(outcome.notes)

    def _run_step(self, name: str, ctx: StepContext) -> StepOutcome:
        handler: Callable[[StepContext], StepOutcome] = getattr(self, f"_step_{name}")
        try:
            return handler(ctx)
        except (GitError, PreconditionError, OSError) as e:
            return StepOutcome.fatal(e)

    # ── Steps ────────────────────────────────────────────────────────────

    def _step_plan(self, ctx: StepContext) -> StepOutcome:
        """Work out branch, base and worktree names for a start."""
        task = ctx.task
        prefix = self.config.branch_prefix
        branch = task.branch or branch_name(prefix, task.id, task.title)
        wt = task.worktree_path or str(worktree_dir(self.config.resolve_tmp_root(), prefix, task.id, task.title))
        base = task.base_branch or self.config.default_base_branch or self.git.current_branch(self.repo_dir)
        ctx.changes.update(branch=branch, worktree_path=wt, base_branch=base)
        return StepOutcome.ok()

    def _step_create_branch(self, ctx: StepContext) -> StepOutcome:
        self.git.create_branch(ctx.get("branch"), ctx.get("base_branch"), self.repo_dir)
        return StepOutcome.ok()

    def _step_add_worktree(self, ctx: StepContext) -> StepOutcome:
        path = ctx.get("worktree_path")
        if Path(path).is_dir() and self.git.is_registered_worktree(path, self.repo_dir):
            return StepOutcome.warning(f"Reusing existing worktree at {path}")
        # A deleted worktree directory stays registered until pruned
        self.git.prune_worktrees(self.repo_dir)
        self.git.add_worktree(path, ctx.get("branch"), self.repo_dir)
        return StepOutcome.ok()

    def _step_copy_files(self, ctx: StepContext) -> StepOutcome:
        paths = self.project_config.copy_files
        if not paths:
            return StepOutcome.ok()
        warnings = copy_configured_files(self.repo_root, ctx.get("worktree_path"), paths)
        if warnings:
            return StepOutcome.warning(f"{len(warnings)} file(s) could not be copied", *warnings)
        return StepOutcome.ok()

    def _step_setup_script(self, ctx: StepContext) -> StepOutcome:
        script = self.project_config.setup_script
        if not script:
            return StepOutcome.ok()
        result = run_setup_script(script, ctx.get("worktree_path"))
        if not result.ok:
            return StepOutcome.warning(result.describe())
        return StepOutcome.ok()

    def _step_require_branches(self, ctx: StepContext) -> StepOutcome:
        if not ctx.task.branch or not ctx.task.base_branch:
            raise PreconditionError(f"Cannot merge {ctx.task.id}: it has no branch or base branch")
        return StepOutcome.ok()

    def _step_merge(self, ctx: StepContext) -> StepOutcome:
        self.git.merge_branch(ctx.task.base_branch, ctx.task.branch, self.repo_dir)
        return StepOutcome.ok()

    def _step_remove_worktree(self, ctx: StepContext) -> StepOutcome:
        path = ctx.task.worktree_path
        if not path:
            return StepOutcome.ok()
        if not self.git.remove_worktree(path, self.repo_dir):
            return StepOutcome.warning(f"git could not remove worktree {path}; deleted the directory instead")
        return StepOutcome.ok()

    def _step_switch_off_branch(self, ctx: StepContext) -> StepOutcome:
        """A branch that is checked out cannot be deleted; move the repo off it."""
        branch = ctx.task.branch
        if not branch or self.git.current_branch(self.repo_dir) != branch:
            return StepOutcome.ok()
        target = ctx.task.base_branch or self.config.default_base_branch
        if not target:
            raise GitError(f"{branch} is checked out and there is no base branch to switch to")
        self.git.checkout(target, self.repo_dir)
        return StepOutcome.ok()

    def _step_delete_branch(self, ctx: StepContext) -> StepOutcome:
        branch = ctx.task.branch
        if not branch or not self.git.branch_exists(branch, self.repo_dir):
            return StepOutcome.ok()
        self.git.delete_branch(branch, self.repo_dir)
        return StepOutcome.ok()
