"""
Tests for board storage, configuration and the log file.

Covers:
    - BoardStore.load() / save(): round-trip, missing and corrupt files
    - GlobalConfig / ProjectConfig: YAML loading, aliases, strict loaders
    - configure_logging(): line format, level, swallowed errors
"""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from branchboard.config import (
    GlobalConfig,
    ProjectConfig,
    load_all,
    project_storage_dir,
    storage_root,
)
from branchboard.errors import ConfigError
from branchboard.log import LOGGER_NAME, RepoLogHandler, configure_logging, env_level, resolve_log_path
from branchboard.schema import Board, Task, TaskStatus
from branchboard.store import BoardStore


TS = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _fixed_root(path):
    return lambda _cwd: str(path)


@pytest.fixture
def store(tmp_path):
    return BoardStore(root=tmp_path / "bbhome", resolve_root=_fixed_root("/work/my-repo"))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Board store
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestBoardStore:

    def test_board_path_is_keyed_by_repo(self, store, tmp_path):
        path = store.board_path("/anywhere")
        assert path == tmp_path / "bbhome" / "projects" / "_work_my-repo" / "board.json"

    def test_missing_board_is_created_empty(self, store):
        board = store.load("/anywhere")
        assert board.tasks == ()
        saved = json.loads(store.board_path("/anywhere").read_text())
        assert saved == {"version": 1, "tasks": []}

    def test_save_load_round_trip(self, store):
        task = Task(id="abc1234", title="Fix bug", status=TaskStatus.IN_REVIEW,
                    branch="vd/task/abc1234-fix-bug", base_branch="main",
                    created_at=TS, updated_at=TS)
        board = Board.empty().with_task(task)
        store.save(board, "/anywhere")
        assert store.load("/anywhere") == board

    def test_saved_file_is_pretty_json(self, store):
        store.save(Board.empty(), "/anywhere")
        text = store.board_path("/anywhere").read_text()
        assert text.startswith("{\n  ")
        assert text.endswith("\n")
        assert not store.board_path("/anywhere").with_suffix(".json.tmp").exists()

    def test_corrupt_board_is_moved_aside(self, store):
        path = store.board_path("/anywhere")
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        board = store.load("/anywhere")

        assert board.tasks == ()
        assert path.with_name("board.json.corrupt").read_text() == "{not json"
        assert json.loads(path.read_text())["tasks"] == []

    def test_ids_are_stable_across_reloads(self, store):
        board = Board.empty().with_task(Task(id="aaa1111", title="one")).with_task(Task(id="bbb2222", title="two"))
        store.save(board, "/anywhere")
        first = store.load("/anywhere").ids()
        second = store.load("/anywhere").ids()
        assert first == second == ["aaa1111", "bbb2222"]

    def test_worktrees_share_one_board(self, tmp_path):
        store = BoardStore(root=tmp_path, resolve_root=_fixed_root("/repo"))
        store.save(Board.empty().with_task(Task(id="x", title="shared")), "/repo")
        assert store.load("/tmp/worktrees/vd-x-shared").ids() == ["x"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Configuration
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestStorageRoot:

    def test_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("BRANCHBOARD_HOME", str(tmp_path / "custom"))
        assert storage_root() == tmp_path / "custom"

    def test_default_under_home(self, tmp_path, monkeypatch):
        monkeypatch.delenv("BRANCHBOARD_HOME")
        assert storage_root() == Path.home() / ".branchboard"

    def test_project_dir(self, tmp_path):
        assert project_storage_dir("/a/b", tmp_path) == tmp_path / "projects" / "_a_b"


class TestGlobalConfig:

    def test_defaults_when_missing(self, tmp_path, monkeypatch):
        monkeypatch.setenv("EDITOR", "vim")
        cfg = GlobalConfig.load(tmp_path)
        assert cfg.branch_prefix == "bb"
        assert cfg.default_base_branch is None
        assert cfg.remote_name == "origin"
        assert cfg.editor == "vim"

    def test_loads_yaml_with_camel_case(self, tmp_path):
        (tmp_path / "config.yaml").write_text(yaml.safe_dump({
            "branchPrefix": "vd/",
            "defaultBaseBranch": "develop",
            "tmp_root": str(tmp_path / "wt"),
            "unknown": 1,
        }))
        cfg = GlobalConfig.load(tmp_path)
        assert cfg.branch_prefix == "vd"
        assert cfg.default_base_branch == "develop"
        assert cfg.resolve_tmp_root() == tmp_path / "wt"

    def test_broken_yaml_falls_back(self, tmp_path):
        (tmp_path / "config.yaml").write_text("branch_prefix: [unclosed")
        assert GlobalConfig.load(tmp_path).branch_prefix == "bb"

    def test_strict_raises(self, tmp_path):
        (tmp_path / "config.yaml").write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            GlobalConfig.load_strict(tmp_path)
        with pytest.raises(ConfigError):
            GlobalConfig.load_strict(tmp_path / "missing")

    def test_tmp_root_from_tmpdir(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TMPDIR", str(tmp_path))
        assert GlobalConfig().resolve_tmp_root() == tmp_path / "branchboard" / "worktrees"

    def test_ensure_file_writes_defaults_once(self, tmp_path):
        path = GlobalConfig.ensure_file(tmp_path)
        assert yaml.safe_load(path.read_text())["branch_prefix"] == "bb"
        path.write_text("branch_prefix: mine\n")
        GlobalConfig.ensure_file(tmp_path)
        assert GlobalConfig.load(tmp_path).branch_prefix == "mine"


class TestProjectConfig:

    def _write(self, tmp_path, data):
        path = ProjectConfig.path("/repo", tmp_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(data))

    def test_copy_files_string_is_split(self, tmp_path):
        self._write(tmp_path, {"copyFiles": " .env   config/local.json \n", "setupScript": "make setup"})
        cfg = ProjectConfig.load("/repo", tmp_path)
        assert cfg.copy_files == [".env", "config/local.json"]
        assert cfg.setup_script == "make setup"

    def test_copy_files_list_drops_blanks(self, tmp_path):
        self._write(tmp_path, {"copy_files": [".env", "  ", ""]})
        assert ProjectConfig.load("/repo", tmp_path).copy_files == [".env"]

    def test_blank_setup_script_is_none(self, tmp_path):
        self._write(tmp_path, {"setup_script": "   "})
        assert ProjectConfig.load("/repo", tmp_path).setup_script is None

    def test_load_all(self, tmp_path):
        self._write(tmp_path, {"copy_files": [".env"]})
        global_cfg, project_cfg = load_all("/repo", tmp_path)
        assert global_cfg.branch_prefix == "bb"
        assert project_cfg.copy_files == [".env"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Logging
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@pytest.fixture
def pkg_logger():
    logger = logging.getLogger(LOGGER_NAME)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield logger
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


class TestLogging:

    def test_line_format(self, tmp_path, pkg_logger):
        log_path = tmp_path / "branchboard.log"
        configure_logging(log_path, logging.DEBUG)

        logging.getLogger("branchboard.git").info("git.branch.create", extra={"meta": {"name": "vd/task/x"}})
        logging.getLogger("branchboard.engine").warning("careful")

        lines = log_path.read_text().splitlines()
        assert lines[0].endswith(' INFO git.branch.create {"name": "vd/task/x"}')
        assert lines[0][:4].isdigit() and "Z " in lines[0]
        assert lines[1].endswith(" WARN careful")

    def test_level_filters(self, tmp_path, pkg_logger):
        log_path = tmp_path / "branchboard.log"
        configure_logging(log_path, logging.ERROR)
        logging.getLogger("branchboard.store").info("quiet")
        assert not log_path.exists()

    def test_env_level(self, monkeypatch):
        monkeypatch.setenv("BRANCHBOARD_LOG_LEVEL", "warn")
        assert env_level() == logging.WARNING
        monkeypatch.setenv("BRANCHBOARD_LOG_LEVEL", "nonsense")
        assert env_level() == logging.INFO

    def test_reconfigure_replaces_handler(self, tmp_path, pkg_logger):
        configure_logging(tmp_path / "a.log")
        configure_logging(tmp_path / "b.log")
        handlers = [h for h in pkg_logger.handlers if isinstance(h, RepoLogHandler)]
        assert [h.path.name for h in handlers] == ["b.log"]

    def test_write_errors_are_swallowed(self, tmp_path, pkg_logger):
        blocker = tmp_path / "file"
        blocker.write_text("")
        configure_logging(blocker / "sub" / "branchboard.log")
        logging.getLogger("branchboard").error("does not raise")

    def test_log_path(self, tmp_path):
        assert resolve_log_path("/a/b", tmp_path) == tmp_path / "projects" / "_a_b" / "branchboard.log"
        assert resolve_log_path(None, tmp_path) == tmp_path / "branchboard.log"
