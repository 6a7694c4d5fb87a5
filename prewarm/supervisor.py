"""
The supervisor owns the warm environment and serializes runs: one request
at a time is handed to a worker forked off the warm process image.
"""

import logging
import os
import select
import signal
import sys
import time
from collections.abc import Sequence
from enum import StrEnum, auto

from result import Err, Ok

from .channel import CommandChannel
from .control import ControlKind, ControlMessage, ControlReader, ControlWriter
from .errors import BootFailed
from .hooks import Environment, ReloadableEnvironment, Runner
from .server_config import SupervisorConfig
from .worker import Worker, spawn_worker

_LOGGER = logging.getLogger(__name__)

# EX_TEMPFAIL: the environment is stale, start over from a clean process
RESTART_EXIT_STATUS = 75


class SupervisorState(StrEnum):
    BOOTING = auto()
    IDLE = auto()
    DISPATCHING = auto()
    TERMINATING = auto()


class Supervisor:
    def __init__(
        self,
        config: SupervisorConfig,
        environment: Environment,
        runner: Runner,
        channel: CommandChannel,
        control: ControlReader,
        control_writer: ControlWriter,
    ) -> None:
        self.config = config
        self.environment = environment
        self.runner = runner
        self.channel = channel
        self.control = control
        self.control_writer = control_writer

        self.state = SupervisorState.BOOTING
        self.active: Worker | None = None
        self.pending: Worker | None = None
        self._runs = 0

    def run(self) -> int:
        try:
            self.boot()
        except BootFailed as ex:
            print(f"prewarm: {ex}", file=sys.stderr)
            return 1

        self._install_signal_handlers()
        try:
            return self.serve()
        finally:
            self.terminate_workers()

    def boot(self) -> None:
        self.state = SupervisorState.BOOTING
        _LOGGER.info("Loading environment")
        start = time.monotonic()
        try:
            self.environment.load()
            self.environment.disconnect()
        except Exception as ex:
            _LOGGER.exception("Environment failed to load")
            raise BootFailed(f"environment failed to load: {ex!r}") from ex
        _LOGGER.info(f"Environment loaded in {time.monotonic() - start:.3f}s")

        if self.config.preload_worker:
            self.pending = self._spawn()

    def serve(self) -> int:
        while True:
            self.state = SupervisorState.IDLE
            _LOGGER.info("Waiting for a request")
            match self.channel.receive(self.control):
                case ControlMessage() as message:
                    exit_status = self.handle_control(message)
                case []:
                    _LOGGER.debug("Empty request, nothing to run")
                    continue
                case list() as args:
                    exit_status = self.dispatch(args)

            if exit_status is not None:
                return exit_status

    def dispatch(self, args: Sequence[str]) -> int | None:
        """
        Runs one request to completion. Returns an exit status when a
        control message ended the run and the supervisor must stop.
        """

        self.state = SupervisorState.DISPATCHING
        self._runs += 1
        match self.channel.claim_response(f"{os.getpid()}-{self._runs}"):
            case Ok(response_path):
                pass
            case Err(claim_failed):
                _LOGGER.error(f"Could not set aside the response: {claim_failed.to_file_error()}")
                response_path = self.channel.response_path

        worker = self._take_pending() or self._spawn()
        self.active = worker
        _LOGGER.info(f"Running {list(args)} in worker {worker.pid}")
        started = time.monotonic()

        worker.hand_off(args, response_path)
        if self.config.preload_worker:
            self.pending = self._spawn()

        try:
            return self._wait_for(worker)
        finally:
            exit_code = worker.reap(self.config.shutdown_grace)
            if not worker.attached:
                _LOGGER.info(f"Worker {worker.pid} exited before reaching the client")
                self.channel.close_out(response_path)
            self.channel.release_response(response_path)
            self.active = None
            _LOGGER.info(
                f"Worker {worker.pid} exited with {exit_code} after "
                f"{time.monotonic() - started:.3f}s"
            )

    def handle_control(self, message: ControlMessage) -> int | None:
        match message.kind:
            case ControlKind.RELOAD:
                self.reload(message.paths)
                return None
            case ControlKind.RESTART:
                _LOGGER.info(f"Restart requested after changes to {message.paths}")
                return RESTART_EXIT_STATUS
            case ControlKind.SHUTDOWN:
                _LOGGER.info("Shutdown requested")
                return 0

    def reload(self, paths: Sequence[str] = ()) -> None:
        self._reload_environment(paths)
        if not self.config.preload_worker:
            _LOGGER.info(f"Changes to {list(paths)} will be picked up by the next worker")
            return

        old, self.pending = self.pending, None
        if old is not None:
            old.reap(self.config.shutdown_grace)
        self.pending = self._spawn()
        _LOGGER.info(
            f"Reloaded preloaded worker {old.pid if old else None} -> {self.pending.pid}"
            f" after changes to {list(paths)}"
        )

    def terminate_workers(self) -> None:
        self.state = SupervisorState.TERMINATING
        for worker in (self.active, self.pending):
            if worker is not None and not worker.reaped:
                _LOGGER.debug(f"Terminating worker {worker.pid}")
                worker.reap(self.config.shutdown_grace)
        self.active = None
        self.pending = None

    def _wait_for(self, worker: Worker) -> int | None:
        timeout = self.config.run_timeout
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            if self.control.buffered:
                readable = [self.control.fd]
            else:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                readable, _, _ = select.select(
                    [worker.sentinel, self.control.fd], [], [], remaining
                )
            if not readable:
                _LOGGER.warning(f"Worker {worker.pid} exceeded {timeout}s, terminating it")
                return None

            if worker.sentinel in readable and worker.read_status():
                return None

            if self.control.fd not in readable:
                continue
            message = self.control.receive()
            if message is None:
                continue

            match message.kind:
                case ControlKind.RELOAD:
                    self.reload(message.paths)
                    if self.config.reload_cancels_run:
                        _LOGGER.info(f"Cancelling the run in worker {worker.pid}")
                        return None
                case _:
                    return self.handle_control(message)

    def _reload_environment(self, paths: Sequence[str]) -> None:
        if not isinstance(self.environment, ReloadableEnvironment):
            return

        start = time.monotonic()
        try:
            self.environment.reload(list(paths))
            self.environment.disconnect()
        except Exception:
            # the old code stays loaded until the next successful reload
            _LOGGER.exception("Environment failed to reload")
            return
        _LOGGER.info(f"Environment reloaded in {time.monotonic() - start:.3f}s")

    def _take_pending(self) -> Worker | None:
        worker, self.pending = self.pending, None
        if worker is None:
            return None
        if worker.wait_exited(0):
            exit_code = worker.reap()
            _LOGGER.warning(f"Preloaded worker {worker.pid} died with {exit_code}, replacing it")
            return None
        _LOGGER.debug(
            f"Using worker {worker.pid}, preloaded {time.monotonic() - worker.spawned_at:.1f}s ago"
        )
        return worker

    def _spawn(self) -> Worker:
        supervisor_fds = [self.control.fd, self.control_writer.writer.fd]
        for worker in (self.active, self.pending):
            if worker is not None:
                supervisor_fds.extend(worker.fds)

        worker = spawn_worker(self.environment, self.runner, supervisor_fds)
        _LOGGER.debug(f"Spawned worker {worker.pid}")
        return worker

    def _request_shutdown(self, signum: int, _frame) -> None:
        try:
            self.control_writer.send(ControlKind.SHUTDOWN)
        except OSError:
            pass

    def _install_signal_handlers(self) -> None:
        for term_signal in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
            signal.signal(term_signal, self._request_shutdown)
