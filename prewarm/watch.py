"""
Classifies filesystem changes into restarts (the warm environment is stale)
and reloads (only per-run state is stale), and reports them to the
supervisor over the control pipe.
"""

import logging
import os
import pathlib
import queue
import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum, auto

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .control import ControlKind, ControlWriter

_LOGGER = logging.getLogger(__name__)

DEFAULT_RESTART = [
    r"(^|/)(pyproject\.toml|setup\.py|setup\.cfg|requirements[^/]*\.txt|poetry\.lock|uv\.lock"
    r"|Pipfile(\.lock)?|conftest\.py|pytest\.ini|tox\.ini|\.env|\.prewarm\.ini)$",
]
DEFAULT_RELOAD = [
    r"\.py$",
]
DEFAULT_IGNORE = [
    r"(^|/)(\.git|__pycache__|\.pytest_cache|\.mypy_cache|\.ruff_cache|\.tox|\.venv|tmp"
    r"|node_modules)/",
    r"\.py[co]$",
    r"(^|/)\.prewarm_ipc(\.[^/]*)?$",
]


class WatchAction(StrEnum):
    RESTART = auto()
    RELOAD = auto()

    def to_control(self) -> ControlKind:
        match self:
            case WatchAction.RESTART:
                return ControlKind.RESTART
            case WatchAction.RELOAD:
                return ControlKind.RELOAD


@dataclass(frozen=True)
class WatchRule:
    pattern: re.Pattern[str]
    action: WatchAction

    def matches(self, path: str) -> bool:
        return self.pattern.search(path) is not None


def relative_path(path: str, root: pathlib.Path) -> str:
    try:
        relative = os.path.relpath(path, root)
    except ValueError:
        relative = path
    return relative.replace(os.sep, "/")


def classify(
    paths: Iterable[str],
    rules: Iterable[WatchRule],
    ignore: Iterable[re.Pattern[str]] = (),
) -> tuple[WatchAction | None, list[str]]:
    """
    Tests the changed paths against the rules. Restart rules are tried
    before reload rules whatever order they were given in, so a batch that
    touches both restarts. Returns the action and the paths that caused it.
    """

    ignore = list(ignore)
    candidates = sorted(
        {path for path in paths if not any(pattern.search(path) for pattern in ignore)}
    )
    rules = list(rules)

    for action in (WatchAction.RESTART, WatchAction.RELOAD):
        matched = [
            path
            for path in candidates
            if any(rule.action == action and rule.matches(path) for rule in rules)
        ]
        if matched:
            return action, matched

    return None, []


class _QueueingHandler(FileSystemEventHandler):
    def __init__(self, changes: queue.SimpleQueue[str]) -> None:
        super().__init__()
        self.changes = changes

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        for path in (event.src_path, getattr(event, "dest_path", "")):
            if path:
                self.changes.put(os.fsdecode(path))


@dataclass
class Watcher:
    root: pathlib.Path
    rules: list[WatchRule]
    ignore: list[re.Pattern[str]]
    control: ControlWriter
    debounce: float = 0.2

    def __post_init__(self) -> None:
        self._changes: queue.SimpleQueue[str] = queue.SimpleQueue()

    def next_batch(self, timeout: float | None = None) -> set[str]:
        """
        Blocks for the first change, then keeps collecting until no change
        has arrived for the debounce interval.
        """

        try:
            first = self._changes.get(timeout=timeout)
        except queue.Empty:
            return set()

        batch = {relative_path(first, self.root)}
        while True:
            try:
                batch.add(relative_path(self._changes.get(timeout=self.debounce), self.root))
            except queue.Empty:
                return batch

    def handle_batch(self, batch: set[str]) -> WatchAction | None:
        action, matched = classify(batch, self.rules, self.ignore)
        match action:
            case None:
                _LOGGER.debug(f"Ignoring changes to {sorted(batch)}")
            case WatchAction.RESTART:
                _LOGGER.info(f"Core files changed, restarting: {matched}")
                self.control.send(action.to_control(), matched)
            case WatchAction.RELOAD:
                _LOGGER.info(f"Reloading after changes to {matched}")
                self.control.send(action.to_control(), matched)
        return action

    def loop(self) -> int:
        observer = Observer()
        observer.schedule(_QueueingHandler(self._changes), str(self.root), recursive=True)
        observer.start()
        _LOGGER.info(f"Watching {self.root}")
        try:
            while True:
                batch = self.next_batch()
                try:
                    action = self.handle_batch(batch)
                except BrokenPipeError:
                    _LOGGER.info("Supervisor is gone, stopping the watcher")
                    return 0
                if action == WatchAction.RESTART:
                    return 0
        finally:
            observer.stop()
            observer.join(timeout=5.0)
