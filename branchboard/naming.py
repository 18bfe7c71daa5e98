"""
Deterministic names for everything a task creates.

A started task owns:
  branch    <prefix>/task/<id>-<slug>
  worktree  <tmp_root>/<prefix>-<id>-<slug>

Ids are short random strings; slugs are derived from the title.
"""
import re
import secrets
from pathlib import Path
from typing import Container, Optional, Union

ID_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"
ID_LENGTH = 7
SLUG_MAX_LEN = 50
SLUG_FALLBACK = "task"

_WHITESPACE_RE = re.compile(r"\s+")
_UNSAFE_RE = re.compile(r"[^a-z0-9-]")
_DASHES_RE = re.compile(r"-+")


def short_id(length: int = ID_LENGTH, taken: Optional[Container[str]] = None) -> str:
    """Random lowercase alphanumeric id. Retries until it is not in `taken`."""
    while True:
        candidate = "".join(secrets.choice(ID_ALPHABET) for _ in range(length))
        if taken is None or candidate not in taken:
            return candidate


def slugify(title: str, max_len: int = SLUG_MAX_LEN) -> str:
    """
    Lowercase, whitespace to dashes, drop anything outside [a-z0-9-],
    collapse and trim dashes. Empty results become "task".

        >>> slugify("Fix the Bug!! #2")
        'fix-the-bug-2'
    """
    slug = _WHITESPACE_RE.sub("-", title.lower())
    slug = _UNSAFE_RE.sub("", slug)
    slug = _DASHES_RE.sub("-", slug).strip("-")
    # Cutting can leave a trailing dash behind
    slug = slug[:max_len].rstrip("-")
    return slug or SLUG_FALLBACK


def branch_name(prefix: str, task_id: str, title: str) -> str:
    return f"{prefix}/task/{task_id}-{slugify(title)}"


def worktree_dir(tmp_root: Union[str, Path], prefix: str, task_id: str, title: str) -> Path:
    return Path(tmp_root) / f"{prefix}-{task_id}-{slugify(title)}"
