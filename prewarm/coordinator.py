"""
Root-level bookkeeping of the supervisor and watcher processes, and the
guarantee that none of them outlive the root.
"""

import logging
import os
import select
import signal
import sys
from collections.abc import Callable, Iterable
from typing import Self

from .files import close_quietly, retry_interrupted

_LOGGER = logging.getLogger(__name__)

_TERMINATING_SIGNALS = [
    signal.SIGTERM,
    signal.SIGINT,
    signal.SIGHUP,
]


def signal_quietly(pid: int, sig: int = signal.SIGTERM) -> bool:
    """
    Sends sig to pid, treating an already exited process as success.
    Returns whether the process was still there.
    """

    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:
        _LOGGER.debug(f"Process {pid} already gone, not sending {signal.Signals(sig).name}")
        return False


def exit_status(wait_status: int) -> int:
    """Exit status as a shell reports it: 128 + signal for a killed process."""

    exit_code = os.waitstatus_to_exitcode(wait_status)
    return 128 - exit_code if exit_code < 0 else exit_code


def reset_signal_handlers() -> None:
    for term_signal in _TERMINATING_SIGNALS:
        signal.signal(term_signal, signal.SIG_DFL)


def fork_child(target: Callable[[], int], close_fds: Iterable[int] = ()) -> int:
    """
    Forks, runs target in the child and leaves the child with its return
    value as exit status. The child never returns into the caller's stack.
    """

    pid = os.fork()
    if pid != 0:
        return pid

    status = 1
    try:
        reset_signal_handlers()
        for fd in close_fds:
            close_quietly(fd)
        status = target()
    except SystemExit as ex:
        status = ex.code if isinstance(ex.code, int) else 1
    except BaseException:
        _LOGGER.exception(f"Child {os.getpid()} failed")
    finally:
        for stream in (sys.stdout, sys.stderr):
            try:
                stream.flush()
            except Exception:
                pass
        os._exit(status & 0xFF)


def _raise_system_exit(signum: int, _frame) -> None:
    _LOGGER.info(f"Received {signal.Signals(signum).name}, shutting down")
    raise SystemExit(128 + signum)


def install_exit_handlers() -> None:
    """SIGTERM and SIGHUP unwind the stack like SIGINT does, so cleanup runs."""

    signal.signal(signal.SIGTERM, _raise_system_exit)
    signal.signal(signal.SIGHUP, _raise_system_exit)


class ProcessCoordinator:
    def __init__(self, shutdown_grace: float = 5.0) -> None:
        self.shutdown_grace = shutdown_grace
        self._pids: dict[str, int] = {}
        self._sentinels: dict[str, int] = {}

    @property
    def pids(self) -> dict[str, int]:
        return dict(self._pids)

    def spawn(self, role: str, target: Callable[[], int], close_fds: Iterable[int] = ()) -> int:
        # a pipe only the child holds open, readable once it exits
        sentinel, keep_alive = os.pipe()
        pid = fork_child(target, close_fds=[sentinel, *close_fds])
        os.close(keep_alive)

        self._pids[role] = pid
        self._sentinels[role] = sentinel
        _LOGGER.info(f"Started {role} as pid {pid}")
        return pid

    def wait_any(self) -> tuple[str, int]:
        """
        Blocks until one tracked child exits, reaps it and returns its role
        and exit status.
        """

        by_fd = {fd: role for role, fd in self._sentinels.items()}
        readable, _, _ = select.select(list(by_fd), [], [])
        role = by_fd[readable[0]]
        return role, self.reap(role)

    def reap(self, role: str, timeout: float | None = None) -> int:
        """
        Waits for a tracked child to exit. When timeout is given and expires
        the child is killed.
        """

        pid = self._pids.pop(role)
        sentinel = self._sentinels.pop(role)
        try:
            if timeout is not None:
                readable, _, _ = select.select([sentinel], [], [], timeout)
                if not readable:
                    _LOGGER.warning(f"{role} ({pid}) did not exit in {timeout}s, killing it")
                    signal_quietly(pid, signal.SIGKILL)
            try:
                _, status = retry_interrupted(os.waitpid, pid, 0)
            except ChildProcessError:
                _LOGGER.debug(f"{role} ({pid}) was already reaped")
                return 0
        finally:
            close_quietly(sentinel)

        exit_code = exit_status(status)
        _LOGGER.info(f"{role} ({pid}) exited with {exit_code}")
        return exit_code

    def terminate_all(self) -> None:
        for role, pid in list(self._pids.items()):
            _LOGGER.debug(f"Terminating {role} ({pid})")
            signal_quietly(pid, signal.SIGTERM)

        for role in list(self._pids):
            self.reap(role, timeout=self.shutdown_grace)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.terminate_all()
