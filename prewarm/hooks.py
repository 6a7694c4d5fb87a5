"""
Collaborator hooks: the environment the supervisor keeps warm, and the
runner each worker invokes.
"""

import importlib
import logging
import os
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field
from types import ModuleType
from typing import BinaryIO, Protocol, runtime_checkable

from result import Err, Ok, Result

from .errors import HookLoadFailed

_LOGGER = logging.getLogger(__name__)


@runtime_checkable
class Environment(Protocol):
    def load(self) -> None:
        """Expensive, once per supervisor. Any exception is fatal."""

    def disconnect(self) -> None:
        """Drops resources that must not cross a fork."""

    def reconnect(self) -> None:
        """Recreates those resources inside a freshly forked worker."""


@runtime_checkable
class ReloadableEnvironment(Environment, Protocol):
    def reload(self, paths: Sequence[str]) -> None:
        """
        Refreshes loaded code in the supervisor after source files changed,
        before the next worker is forked. Optional: environments without it
        keep serving what they loaded at boot.
        """


@runtime_checkable
class Runner(Protocol):
    def run(self, args: Sequence[str], sink: BinaryIO) -> int: ...


class NullEnvironment:
    def load(self) -> None:
        pass

    def reload(self, paths: Sequence[str]) -> None:
        pass

    def disconnect(self) -> None:
        pass

    def reconnect(self) -> None:
        pass


@dataclass
class ModuleEnvironment:
    """Imports a list of heavy modules once, so workers fork with them loaded."""

    modules: list[str] = field(default_factory=list)

    def load(self) -> None:
        for module in self.modules:
            _LOGGER.info(f"Preloading {module}")
            importlib.import_module(module)

    def reload(self, paths: Sequence[str]) -> None:
        importlib.invalidate_caches()
        loaded = [name for name in list(sys.modules) if self._preloaded(name)]
        # submodules first, so a package picks up their fresh versions
        for name in sorted(loaded, key=lambda name: name.count("."), reverse=True):
            module = sys.modules.get(name)
            if module is None:
                continue
            _drop_bytecode(module)
            _LOGGER.debug(f"Reloading {name}")
            importlib.reload(module)

    def disconnect(self) -> None:
        pass

    def reconnect(self) -> None:
        pass

    def _preloaded(self, name: str) -> bool:
        return any(name == module or name.startswith(f"{module}.") for module in self.modules)


def _drop_bytecode(module: ModuleType) -> None:
    # bytecode is only checked against the source's mtime in whole seconds
    cached = getattr(module, "__cached__", None)
    if not cached:
        return
    try:
        os.remove(cached)
    except FileNotFoundError:
        pass


@dataclass
class PytestRunner:
    extra_args: list[str] = field(default_factory=lambda: ["--color=yes"])

    def run(self, args: Sequence[str], sink: BinaryIO) -> int:
        import pytest

        # fd level, so pytest's own capture and -s output reach the client too
        sys.stdout.flush()
        os.dup2(sink.fileno(), sys.stdout.fileno())
        sys.stdout.reconfigure(line_buffering=True)  # type: ignore[union-attr]
        try:
            return int(pytest.main([*self.extra_args, *args]))
        finally:
            sys.stdout.flush()


class EchoRunner:
    def run(self, args: Sequence[str], sink: BinaryIO) -> int:
        sink.write((" ".join(args) + "\n").encode())
        return 0


def load_hook(spec: str, **kwargs) -> Result[object, HookLoadFailed]:
    """
    Resolves "package.module:attribute". A callable attribute is called
    with kwargs to build the hook.
    """

    module_name, sep, attribute = spec.partition(":")
    if not sep or not module_name or not attribute:
        return Err(HookLoadFailed(spec, "expected 'module:attribute'"))

    try:
        target = importlib.import_module(module_name)
        for name in attribute.split("."):
            target = getattr(target, name)
    except (ImportError, AttributeError) as ex:
        return Err(HookLoadFailed(spec, repr(ex)))

    if not callable(target):
        return Ok(target)

    try:
        return Ok(target(**kwargs))
    except Exception as ex:
        return Err(HookLoadFailed(spec, repr(ex)))
