# branchboard: a personal kanban board where every started task owns a git branch and worktree
#
# Components:
#   naming.py    - Short task ids, slugs, branch and worktree names
#   schema.py    - Data model (Task, Board, TaskStatus)
#   git.py       - Git subprocess adapter and repository identity
#   provision.py - Copies configured files and runs setup scripts in new worktrees
#   config.py    - Global and per-project YAML configuration
#   store.py     - JSON persistence of the board, shared by all worktrees of a repo
#   log.py       - Per-repository log file
#   engine.py    - Task lifecycle state machine
#   cli.py       - Terminal front-end

__version__ = "0.3.0"
