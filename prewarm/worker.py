import logging
import os
import pathlib
import select
import signal
import sys
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from functools import partial

from result import Err, Ok

from . import token_io
from .channel import ResponseSink
from .coordinator import exit_status, fork_child, signal_quietly
from .files import close_quietly, retry_interrupted, write_all
from .hooks import Environment, Runner
from .token_io import TokenReader, TokenWriter

_LOGGER = logging.getLogger(__name__)

# written on the status pipe once the worker has attached to the client
ATTACHED = b"A"


@dataclass
class Worker:
    """Supervisor-side handle on one forked worker."""

    pid: int
    request_writer: TokenWriter | None
    sentinel: int
    spawned_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        self.attached = False
        self.exit_code: int | None = None
        self._sentinel_closed = False

    @property
    def reaped(self) -> bool:
        return self.exit_code is not None

    @property
    def fds(self) -> list[int]:
        fds = [self.sentinel]
        if self.request_writer is not None:
            fds.append(self.request_writer.fd)
        return fds

    def hand_off(self, args: Sequence[str], response_path: pathlib.Path) -> None:
        writer, self.request_writer = self.request_writer, None
        if writer is None:
            raise RuntimeError(f"Worker {self.pid} already has a request")

        _LOGGER.debug(f"Handing {args} to worker {self.pid}, responding on {response_path}")
        try:
            writer.write([os.fsdecode(response_path), str(len(args)), *args])
        except BrokenPipeError:
            _LOGGER.warning(f"Worker {self.pid} exited before taking its request")
        finally:
            writer.close()

    def read_status(self) -> bool:
        """
        Consumes what the worker reported on its status pipe. Returns True
        once the pipe is closed, i.e. the worker exited.
        """

        data = retry_interrupted(os.read, self.sentinel, 64)
        if ATTACHED in data:
            self.attached = True
        if not data:
            self._sentinel_closed = True
        return self._sentinel_closed

    def wait_exited(self, timeout: float | None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._sentinel_closed:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            readable, _, _ = select.select([self.sentinel], [], [], remaining)
            if not readable:
                return False
            self.read_status()
        return True

    def reap(self, grace: float = 5.0) -> int:
        """
        Terminates the worker if it is still running, then waits for it.
        """

        if self.exit_code is not None:
            return self.exit_code

        if self.request_writer is not None:
            self.request_writer.close()
            self.request_writer = None

        if not self._sentinel_closed:
            signal_quietly(self.pid, signal.SIGTERM)
            if not self.wait_exited(grace):
                _LOGGER.warning(f"Worker {self.pid} ignored SIGTERM, killing it")
                signal_quietly(self.pid, signal.SIGKILL)

        try:
            _, status = retry_interrupted(os.waitpid, self.pid, 0)
            self.exit_code = exit_status(status)
        except ChildProcessError:
            _LOGGER.debug(f"Worker {self.pid} was already reaped")
            self.exit_code = 0
        finally:
            close_quietly(self.sentinel)

        return self.exit_code


def _read_request(reader: TokenReader) -> tuple[pathlib.Path, list[str]] | None:
    response_path = reader.read()
    if response_path is None:
        # the supervisor discarded us before any request came in
        return None

    match reader.read_int():
        case Ok(count):
            pass
        case Err(token):
            _LOGGER.error(f"Malformed request header {token!r}")
            return None

    args = reader.read_multiple(count)
    if len(args) != count:
        _LOGGER.error(f"Expected {count} arguments, got {len(args)}")
        return None
    return pathlib.Path(response_path), args


def _flush_stdio() -> None:
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (BrokenPipeError, ValueError):
            pass


def _worker_main(
    environment: Environment,
    runner: Runner,
    request_reader: TokenReader,
    status_fd: int,
) -> int:
    pid = os.getpid()

    start = time.monotonic()
    environment.reconnect()
    _LOGGER.info(f"Worker {pid} loaded in {time.monotonic() - start:.3f}s")

    with request_reader:
        request = _read_request(request_reader)
    if request is None:
        return 0
    response_path, args = request

    _LOGGER.info(f"Worker {pid} running {args}")
    sink = ResponseSink.open(response_path)
    if sink.disconnected:
        _LOGGER.info(f"Worker {pid}: client is gone, skipping the run")
        return 0

    try:
        write_all(status_fd, ATTACHED)
        status = runner.run(args, sink)
    except BrokenPipeError:
        _LOGGER.debug(f"Worker {pid}: client stopped listening")
        status = 0
    except Exception:
        _LOGGER.exception(f"Worker {pid}: run failed")
        status = 1
    finally:
        _flush_stdio()
        sink.close()
        environment.disconnect()

    _LOGGER.info(f"Worker {pid} finished {args} with {status}")
    return status


def spawn_worker(
    environment: Environment,
    runner: Runner,
    supervisor_fds: Iterable[int] = (),
) -> Worker:
    """
    Forks a worker off the current (warm) process. supervisor_fds are
    closed in the child.
    """

    request_reader, request_writer = token_io.open_pipe()
    sentinel, status_fd = os.pipe()

    pid = fork_child(
        partial(_worker_main, environment, runner, request_reader, status_fd),
        close_fds=[*supervisor_fds, request_writer.fd, sentinel],
    )

    request_reader.close()
    os.close(status_fd)
    return Worker(pid=pid, request_writer=request_writer, sentinel=sentinel)
