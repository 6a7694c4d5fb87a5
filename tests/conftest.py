"""Shared pytest fixtures: test hooks and a supervisor running in a child process."""

from __future__ import annotations

import os
import pathlib
import signal
import sys
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from typing import BinaryIO

import pytest

from prewarm import token_io
from prewarm.channel import CommandChannel
from prewarm.control import ControlKind, ControlReader, ControlWriter
from prewarm.coordinator import fork_child
from prewarm.server_config import SupervisorConfig
from prewarm.supervisor import Supervisor


def record(path: pathlib.Path, line: str) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
    try:
        os.write(fd, (line + "\n").encode())
    finally:
        os.close(fd)


def read_events(path: pathlib.Path) -> list[str]:
    if not path.exists():
        return []
    return path.read_text().splitlines()


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.02)


def alive(pid: int) -> bool:
    """Whether pid is a running (not zombie) process."""
    try:
        stat = pathlib.Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    except OSError:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        return True
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def descendants(pid: int) -> set[int]:
    parents: dict[int, int] = {}
    for stat_path in pathlib.Path("/proc").glob("[0-9]*/stat"):
        try:
            fields = stat_path.read_text().rsplit(")", 1)[1].split()
        except OSError:
            continue
        if fields[0] != "Z":
            parents[int(stat_path.parent.name)] = int(fields[1])

    found: set[int] = set()
    frontier = {pid}
    while frontier:
        children = {child for child, parent in parents.items() if parent in frontier}
        frontier = children - found
        found |= children
    return found


def wait_exit(pid: int, timeout: float = 10.0) -> int:
    deadline = time.monotonic() + timeout
    while True:
        waited, status = os.waitpid(pid, os.WNOHANG)
        if waited == pid:
            return os.waitstatus_to_exitcode(status)
        if time.monotonic() > deadline:
            os.kill(pid, signal.SIGKILL)
            os.waitpid(pid, 0)
            raise AssertionError(f"process {pid} did not exit in time")
        time.sleep(0.02)


class RecordingEnvironment:
    def __init__(self, events: pathlib.Path) -> None:
        self.events = events

    def load(self) -> None:
        record(self.events, f"load {os.getpid()}")

    def disconnect(self) -> None:
        pass

    def reconnect(self) -> None:
        record(self.events, f"reconnect {os.getpid()} {os.getppid()}")


class FailingEnvironment(RecordingEnvironment):
    def load(self) -> None:
        raise ConnectionError("database is down")


class ScriptedRunner:
    """Behaves according to the first argument of the request."""

    def __init__(self, events: pathlib.Path) -> None:
        self.events = events

    def run(self, args: Sequence[str], sink: BinaryIO) -> int:
        match list(args):
            case ["slow", delay]:
                record(self.events, f"start {os.getpid()}")
                sink.write(b"started\n")
                time.sleep(float(delay))
                record(self.events, f"end {os.getpid()}")
            case ["stream", count]:
                for i in range(int(count)):
                    sink.write(f"line {i}\n".encode())
                    time.sleep(0.01)
                record(self.events, f"streamed {os.getpid()}")
            case ["exit", code]:
                return int(code)
            case ["crash"]:
                os._exit(3)
            case ["value", module]:
                sink.write(f"{sys.modules[module].VALUE}\n".encode())
            case _:
                sink.write((" ".join(args) + "\n").encode())
        sink.write(f"worker={os.getpid()} supervisor={os.getppid()}\n".encode())
        return 0


@dataclass
class RunningSupervisor:
    pid: int
    channel: CommandChannel
    control: ControlWriter
    events: pathlib.Path

    def send(self, *args: str) -> bytes:
        return b"".join(self.channel.send(args))

    def control_message(self, kind: ControlKind) -> None:
        self.control.send(kind)

    def reconnects(self) -> list[tuple[int, int]]:
        result = []
        for line in read_events(self.events):
            if line.startswith("reconnect "):
                _, pid, ppid = line.split()
                result.append((int(pid), int(ppid)))
        return result


def start_supervisor(
    tmp_path: pathlib.Path, config: SupervisorConfig, environment=None
) -> RunningSupervisor:
    events = tmp_path / "events.log"
    channel = CommandChannel(tmp_path / ".prewarm_ipc")
    channel.ensure().unwrap()

    reader, writer = token_io.open_pipe()
    control_writer = ControlWriter(writer)
    supervisor = Supervisor(
        config=config,
        environment=environment or RecordingEnvironment(events),
        runner=ScriptedRunner(events),
        channel=channel,
        control=ControlReader(reader),
        control_writer=control_writer,
    )
    pid = fork_child(supervisor.run)
    reader.close()
    return RunningSupervisor(pid=pid, channel=channel, control=control_writer, events=events)


def stop_supervisor(running: RunningSupervisor) -> None:
    try:
        running.control_message(ControlKind.SHUTDOWN)
    except BrokenPipeError:
        pass
    try:
        wait_exit(running.pid)
    except ChildProcessError:
        pass
    running.control.close()


@pytest.fixture()
def supervisor_config() -> SupervisorConfig:
    return SupervisorConfig(shutdown_grace=2.0)


@pytest.fixture()
def supervisor(
    tmp_path: pathlib.Path, supervisor_config: SupervisorConfig
) -> Iterator[RunningSupervisor]:
    running = start_supervisor(tmp_path, supervisor_config)
    yield running
    stop_supervisor(running)
