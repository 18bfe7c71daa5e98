"""
branchboard: command line surface.

    branchboard                      show the board
    branchboard add "Fix the bug"    create a task in To Do
    branchboard start 3fa            branch + worktree, move to In Progress
    branchboard merge 3fa            merge into base, clean up, move to Done

Task ids may be abbreviated to any unique prefix.
"""
import argparse
import logging
import os
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import __version__
from .config import GlobalConfig, ProjectConfig, load_all, storage_root
from .engine import (
    CancelTask,
    CompleteTask,
    CreateTask,
    DeleteTask,
    EditDescription,
    EditTitle,
    MergeAndComplete,
    MoveToReview,
    MoveToTodo,
    StartTask,
    TaskEngine,
    TransitionResult,
    allowed_actions,
)
from .errors import BranchboardError
from .git import GitClient, resolve_repository_root
from .log import configure_logging, resolve_log_path
from .schema import Board, Task, format_timestamp
from .store import BoardStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1

TRANSITION_COMMANDS = {
    "start": StartTask,
    "review": MoveToReview,
    "todo": MoveToTodo,
    "done": CompleteTask,
    "merge": MergeAndComplete,
    "cancel": CancelTask,
}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Rendering
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def render_board(board: Board, config: GlobalConfig, base: Optional[str] = None) -> str:
    lines = [f"prefix={config.branch_prefix} remote={config.remote_name} base={base or '-'}", ""]
    for status, tasks in board.tasks_by_status().items():
        lines.append(f"{status.value} ({len(tasks)})")
        for task in tasks:
            suffix = f"  [{task.branch}]" if task.branch else ""
            lines.append(f"  {task.id}  {task.title}{suffix}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def render_task(task: Task) -> str:
    rows = [
        ("id", task.id),
        ("title", task.title),
        ("status", task.status.value),
        ("branch", task.branch),
        ("base", task.base_branch),
        ("worktree", task.worktree_path),
        ("created", format_timestamp(task.created_at)),
        ("updated", format_timestamp(task.updated_at)),
    ]
    lines = [f"{name:<9}{value}" for name, value in rows if value]
    actions = ", ".join(a.value for a in allowed_actions(task.status))
    if actions:
        lines.append(f"{'actions':<9}{actions}")
    if task.description:
        lines += ["", task.description]
    return "\n".join(lines) + "\n"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Commands
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _report(result: TransitionResult) -> int:
    print(result.summary())
    return EXIT_OK


def cmd_board(engine: TaskEngine, args) -> int:
    base = engine.config.default_base_branch
    if not base:
        try:
            base = engine.git.current_branch(engine.repo_dir)
        except BranchboardError:
            base = None
    sys.stdout.write(render_board(engine.board(), engine.config, base))
    return EXIT_OK


def cmd_add(engine: TaskEngine, args) -> int:
    return _report(engine.apply(CreateTask(" ".join(args.title), args.description)))


def cmd_show(engine: TaskEngine, args) -> int:
    sys.stdout.write(render_task(engine.find(args.id)))
    return EXIT_OK


def cmd_transition(engine: TaskEngine, args) -> int:
    task = engine.find(args.id)
    return _report(engine.apply(TRANSITION_COMMANDS[args.command](task.id)))


def cmd_rm(engine: TaskEngine, args) -> int:
    task = engine.find(args.id)
    if not args.yes:
        answer = input(f"Delete {task.id} ({task.title})? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            print("Aborted")
            return EXIT_OK
    return _report(engine.apply(DeleteTask(task.id)))


def cmd_edit(engine: TaskEngine, args) -> int:
    if args.title is None and args.description is None:
        print("Nothing to change: pass --title and/or --description", file=sys.stderr)
        return EXIT_ERROR
    task = engine.find(args.id)
    result = None
    if args.title is not None:
        result = engine.apply(EditTitle(task.id, args.title))
    if args.description is not None:
        result = engine.apply(EditDescription(task.id, args.description))
    return _report(result)


def cmd_open(engine: TaskEngine, args) -> int:
    task = engine.find(args.id)
    if not task.worktree_path or not Path(task.worktree_path).is_dir():
        print(f"{task.id} has no worktree to open", file=sys.stderr)
        return EXIT_ERROR
    editor = engine.config.editor or os.environ.get("EDITOR")
    if not editor:
        print("No editor configured: set `editor` in config.yaml or $EDITOR", file=sys.stderr)
        return EXIT_ERROR
    logger.info("task.open", extra={"meta": {"id": task.id, "editor": editor}})
    try:
        return subprocess.call(shlex.split(editor) + [task.worktree_path])
    except OSError as e:
        print(f"Could not launch {editor}: {e}", file=sys.stderr)
        return EXIT_ERROR


def cmd_config(engine: TaskEngine, args) -> int:
    root = engine.store.root
    if args.project:
        path = ProjectConfig.path(engine.repo_root, root)
        if args.action == "init":
            ProjectConfig.ensure_file(engine.repo_root, root)
            ProjectConfig.load_strict(engine.repo_root, root)
    else:
        path = GlobalConfig.path(root)
        if args.action == "init":
            GlobalConfig.ensure_file(root)
            GlobalConfig.load_strict(root)
    print(path)
    return EXIT_OK


def cmd_doctor(engine: TaskEngine, args) -> int:
    """List git worktrees and flag tasks whose worktree is missing."""
    worktrees = engine.git.list_worktrees(engine.repo_dir)
    known = {os.path.realpath(wt.get("worktree", "")) for wt in worktrees}
    print(f"Worktrees ({len(worktrees)}):")
    for wt in worktrees:
        print(f"  {wt.get('worktree')}  {wt.get('branch', '(detached)')}")

    problems = 0
    for task in engine.board().tasks:
        if not task.worktree_path:
            continue
        if not Path(task.worktree_path).is_dir():
            print(f"! {task.id}: worktree {task.worktree_path} is missing")
            problems += 1
        elif os.path.realpath(task.worktree_path) not in known:
            print(f"! {task.id}: {task.worktree_path} is not registered with git")
            problems += 1
    print("OK" if not problems else f"{problems} problem(s)")
    return EXIT_OK if not problems else EXIT_ERROR


COMMANDS: Dict[str, Callable[[TaskEngine, argparse.Namespace], int]] = {
    "board": cmd_board,
    "add": cmd_add,
    "show": cmd_show,
    "rm": cmd_rm,
    "edit": cmd_edit,
    "open": cmd_open,
    "config": cmd_config,
    "doctor": cmd_doctor,
}
COMMANDS.update({name: cmd_transition for name in TRANSITION_COMMANDS})


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Entry point
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="branchboard",
        description="Personal kanban board that gives every task its own git branch and worktree",
    )
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument(
        "-C", dest="directory", default=".",
        help="Run as if started in DIR (default: current directory)",
    )
    sub = ap.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("board", help="Show the board (default)")

    p = sub.add_parser("add", help="Create a task in To Do")
    p.add_argument("title", nargs="+")
    p.add_argument("-d", "--description", default=None)

    p = sub.add_parser("show", help="Show one task")
    p.add_argument("id")

    helps = {
        "start": "Create branch and worktree, move to In Progress",
        "review": "Move to In Review",
        "todo": "Move back to To Do (branch and worktree are kept)",
        "done": "Mark Done and remove the worktree",
        "merge": "Merge into the base branch, clean up, mark Done",
        "cancel": "Cancel and remove worktree and branch",
    }
    for name in TRANSITION_COMMANDS:
        p = sub.add_parser(name, help=helps[name])
        p.add_argument("id")

    p = sub.add_parser("rm", help="Delete a task and its worktree and branch")
    p.add_argument("id")
    p.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    p = sub.add_parser("edit", help="Change title or description")
    p.add_argument("id")
    p.add_argument("--title", default=None)
    p.add_argument("--description", default=None)

    p = sub.add_parser("open", help="Open the task's worktree in $EDITOR")
    p.add_argument("id")

    p = sub.add_parser("config", help="Create or locate config files")
    p.add_argument("action", choices=["init", "path"])
    p.add_argument("--project", action="store_true", help="Per-repository config instead of global")

    sub.add_parser("doctor", help="Check board worktrees against git")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "board"
    repo_dir = os.path.abspath(args.directory)

    git = GitClient()
    root = storage_root()
    repo_root = resolve_repository_root(repo_dir, git)
    configure_logging(resolve_log_path(repo_root, root))

    try:
        config, project_config = load_all(repo_root, root)
        store = BoardStore(root=root, resolve_root=lambda cwd: resolve_repository_root(cwd, git))
        engine = TaskEngine(repo_dir, store=store, git=git, config=config, project_config=project_config)
        return COMMANDS[command](engine, args)
    except BranchboardError as e:
        logger.error(f"{command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
