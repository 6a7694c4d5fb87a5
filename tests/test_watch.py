from __future__ import annotations

import pathlib
import re

import pytest

from prewarm import token_io
from prewarm.control import ControlKind, ControlMessage, ControlReader, ControlWriter
from prewarm.watch import (
    DEFAULT_IGNORE,
    DEFAULT_RELOAD,
    DEFAULT_RESTART,
    WatchAction,
    WatchRule,
    Watcher,
    classify,
    relative_path,
)

RULES = [WatchRule(re.compile(p), WatchAction.RELOAD) for p in DEFAULT_RELOAD] + [
    WatchRule(re.compile(p), WatchAction.RESTART) for p in DEFAULT_RESTART
]
IGNORE = [re.compile(p) for p in DEFAULT_IGNORE]


@pytest.mark.parametrize(
    "path",
    ["pyproject.toml", "requirements-dev.txt", "tests/conftest.py", "poetry.lock", ".env"],
)
def test_environment_files_restart(path: str) -> None:
    assert classify([path], RULES, IGNORE) == (WatchAction.RESTART, [path])


def test_source_files_reload() -> None:
    assert classify(["app/models.py", "tests/test_models.py"], RULES, IGNORE) == (
        WatchAction.RELOAD,
        ["app/models.py", "tests/test_models.py"],
    )


def test_restart_wins_over_reload_in_one_batch() -> None:
    action, matched = classify(["app/models.py", "setup.cfg"], RULES, IGNORE)
    assert action == WatchAction.RESTART
    assert matched == ["setup.cfg"]


def test_unmatched_and_ignored_paths_do_nothing() -> None:
    batch = [
        "README.md",
        "app/__pycache__/models.cpython-312.pyc",
        ".git/index",
        ".prewarm_ipc",
        ".prewarm_ipc.out.4242-7",
    ]
    assert classify(batch, RULES, IGNORE) == (None, [])


def test_ignored_directories_hide_even_matching_files() -> None:
    assert classify([".venv/lib/site.py", "tmp/pyproject.toml"], RULES, IGNORE) == (None, [])


def test_relative_path(tmp_path: pathlib.Path) -> None:
    assert relative_path(str(tmp_path / "pkg" / "mod.py"), tmp_path) == "pkg/mod.py"


@pytest.fixture()
def watcher(tmp_path: pathlib.Path):
    reader, writer = token_io.open_pipe()
    yield Watcher(
        root=tmp_path,
        rules=RULES,
        ignore=IGNORE,
        control=ControlWriter(writer),
        debounce=0.05,
    ), ControlReader(reader)
    reader.close()
    writer.close()


def test_batch_collects_until_quiet(watcher, tmp_path: pathlib.Path) -> None:
    w, _ = watcher
    for name in ("a.py", "b.py", "a.py"):
        w._changes.put(str(tmp_path / name))

    assert w.next_batch(timeout=1.0) == {"a.py", "b.py"}
    assert w.next_batch(timeout=0.05) == set()


def test_reload_batch_is_reported(watcher) -> None:
    w, control = watcher
    assert w.handle_batch({"pkg/mod.py", "notes.txt"}) == WatchAction.RELOAD
    assert control.receive() == ControlMessage(ControlKind.RELOAD, ["pkg/mod.py"])


def test_restart_batch_is_reported(watcher) -> None:
    w, control = watcher
    assert w.handle_batch({"pkg/mod.py", "pyproject.toml"}) == WatchAction.RESTART
    assert control.receive() == ControlMessage(ControlKind.RESTART, ["pyproject.toml"])


def test_unclassified_batch_sends_nothing(watcher) -> None:
    w, control = watcher
    assert w.handle_batch({"notes.txt"}) is None
    assert not control.buffered
