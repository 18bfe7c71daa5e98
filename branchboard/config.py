# branchboard: configuration
#
# Global settings live in ~/.branchboard/config.yaml, per-repository settings
# in ~/.branchboard/projects/<repo key>/config.yaml next to the board.
# Set BRANCHBOARD_HOME to move the whole storage root.

import logging
import os
import re
import tempfile
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .errors import ConfigError
from .git import sanitize_path_for_dir

logger = logging.getLogger(__name__)

STORAGE_DIRNAME = ".branchboard"
CONFIG_FILENAME = "config.yaml"
TMP_SUBPATH = ("branchboard", "worktrees")

# camelCase spellings accepted for compatibility with hand-written files
_ALIASES = {
    "branchPrefix": "branch_prefix",
    "defaultBaseBranch": "default_base_branch",
    "tmpRoot": "tmp_root",
    "remoteName": "remote_name",
    "setupScript": "setup_script",
    "copyFiles": "copy_files",
}


def storage_root() -> Path:
    env = os.environ.get("BRANCHBOARD_HOME")
    if env:
        return Path(env).expanduser()
    return Path.home() / STORAGE_DIRNAME


def project_storage_dir(repo_root: str, root: Optional[Path] = None) -> Path:
    """Directory holding the board, project config and log of one repository."""
    return (root or storage_root()) / "projects" / sanitize_path_for_dir(repo_root)


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping, got {type(data).__name__}")
    return data


def _normalize_keys(data: Dict[str, Any], allowed: List[str]) -> Dict[str, Any]:
    out = {}
    for key, value in data.items():
        key = _ALIASES.get(key, key)
        if key in allowed:
            out[key] = value
    return out


def _write_yaml(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


@dataclass
class GlobalConfig:
    """User-wide settings."""

    branch_prefix: str = "bb"
    default_base_branch: Optional[str] = None  # None = current branch at start time
    tmp_root: Optional[str] = None              # None = $TMPDIR/branchboard/worktrees
    remote_name: str = "origin"
    editor: Optional[str] = field(default_factory=lambda: os.environ.get("EDITOR"))

    def resolve_tmp_root(self) -> Path:
        """Directory under which task worktrees are created."""
        if self.tmp_root:
            return Path(self.tmp_root).expanduser()
        tmp = os.environ.get("TMPDIR") or tempfile.gettempdir()
        return Path(tmp).joinpath(*TMP_SUBPATH)

    @staticmethod
    def path(root: Optional[Path] = None) -> Path:
        return (root or storage_root()) / CONFIG_FILENAME

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GlobalConfig":
        values = _normalize_keys(data, [f.name for f in fields(cls)])
        cfg = cls(**values)
        cfg.branch_prefix = str(cfg.branch_prefix or "bb").strip("/")
        return cfg

    @classmethod
    def load(cls, root: Optional[Path] = None) -> "GlobalConfig":
        """Load config from YAML, falling back to defaults."""
        cfg_path = cls.path(root)
        if not cfg_path.exists():
            return cls()
        try:
            return cls.from_dict(_read_yaml(cfg_path))
        except (OSError, yaml.YAMLError, ConfigError, TypeError) as e:
            logger.warning(f"Ignoring unreadable config {cfg_path}: {e}")
            return cls()

    @classmethod
    def load_strict(cls, root: Optional[Path] = None) -> "GlobalConfig":
        """Like load(), but a missing or broken file is an error."""
        cfg_path = cls.path(root)
        try:
            return cls.from_dict(_read_yaml(cfg_path))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot load {cfg_path}: {e}") from e

    def save(self, root: Optional[Path] = None) -> Path:
        cfg_path = self.path(root)
        _write_yaml(cfg_path, asdict(self))
        return cfg_path

    @classmethod
    def ensure_file(cls, root: Optional[Path] = None) -> Path:
        """Write the defaults if no config file exists yet. Returns its path."""
        cfg_path = cls.path(root)
        if not cfg_path.exists():
            cls().save(root)
        return cfg_path


def _split_copy_files(value: Any) -> List[str]:
    """Accept a list or a whitespace-separated string; drop blanks."""
    if isinstance(value, str):
        items = re.split(r"\s+", value)
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        return []
    return [item.strip() for item in items if item and item.strip()]


@dataclass
class ProjectConfig:
    """Per-repository settings applied when a task is started."""

    setup_script: Optional[str] = None   # e.g. "pip install -e ." run inside the worktree
    copy_files: List[str] = field(default_factory=list)  # repo-relative, e.g. [".env"]

    @staticmethod
    def path(repo_root: str, root: Optional[Path] = None) -> Path:
        return project_storage_dir(repo_root, root) / CONFIG_FILENAME

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectConfig":
        values = _normalize_keys(data, [f.name for f in fields(cls)])
        script = str(values.get("setup_script") or "").strip()
        return cls(
            setup_script=script or None,
            copy_files=_split_copy_files(values.get("copy_files")),
        )

    @classmethod
    def load(cls, repo_root: str, root: Optional[Path] = None) -> "ProjectConfig":
        cfg_path = cls.path(repo_root, root)
        if not cfg_path.exists():
            return cls()
        try:
            return cls.from_dict(_read_yaml(cfg_path))
        except (OSError, yaml.YAMLError, ConfigError) as e:
            logger.warning(f"Ignoring unreadable project config {cfg_path}: {e}")
            return cls()

    @classmethod
    def load_strict(cls, repo_root: str, root: Optional[Path] = None) -> "ProjectConfig":
        cfg_path = cls.path(repo_root, root)
        try:
            return cls.from_dict(_read_yaml(cfg_path))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot load {cfg_path}: {e}") from e

    @classmethod
    def ensure_file(cls, repo_root: str, root: Optional[Path] = None) -> Path:
        cfg_path = cls.path(repo_root, root)
        if not cfg_path.exists():
            _write_yaml(cfg_path, asdict(cls()))
        return cfg_path


def load_all(repo_root: str, root: Optional[Union[str, Path]] = None) -> Tuple[GlobalConfig, ProjectConfig]:
    root = Path(root) if root else None
    return GlobalConfig.load(root), ProjectConfig.load(repo_root, root)
