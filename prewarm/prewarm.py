#!/usr/bin/env python3

import logging
import os
import sys
from collections.abc import Sequence

from result import Err, Ok

from . import server_config, token_io
from .channel import CommandChannel
from .control import ControlReader, ControlWriter
from .coordinator import ProcessCoordinator, install_exit_handlers
from .errors import InvalidConfig
from .hooks import load_hook
from .server_config import PrewarmConfig
from .supervisor import Supervisor
from .watch import Watcher

_LOGGER = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(process)d] %(name)s %(levelname)s: %(message)s"


def run_client(config: PrewarmConfig, args: Sequence[str]) -> int:
    channel = CommandChannel(config.channel_path)
    match channel.ensure():
        case Ok():
            pass
        case Err(create_failed):
            print(f"prewarm: {create_failed.to_file_error()}", file=sys.stderr)
            return 1

    out = sys.stdout.buffer
    try:
        for chunk in channel.send(args):
            out.write(chunk)
            out.flush()
    except BrokenPipeError:
        # stdout went away; keep the interpreter from complaining on exit
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
    return 0


def run_server(config: PrewarmConfig) -> int:
    _LOGGER.info(f"=== Starting prewarm instance {os.getpid()} ===")

    channel = CommandChannel(config.channel_path)
    match channel.ensure():
        case Ok(path):
            _LOGGER.info(f"Listening on {path}")
        case Err(create_failed):
            _LOGGER.error(f"Could not create channel: {create_failed.to_file_error()}")
            print(f"prewarm: {create_failed.to_file_error()}", file=sys.stderr)
            return 1

    supervisor_config = config.supervisor
    match load_hook(supervisor_config.environment, **supervisor_config.environment_kwargs):
        case Ok(environment):
            pass
        case Err(hook_failed):
            print(f"prewarm: {hook_failed}", file=sys.stderr)
            return 2
    match load_hook(supervisor_config.runner):
        case Ok(runner):
            pass
        case Err(hook_failed):
            print(f"prewarm: {hook_failed}", file=sys.stderr)
            return 2

    control_reader, raw_control_writer = token_io.open_pipe()
    control = ControlReader(control_reader)
    control_writer = ControlWriter(raw_control_writer)

    install_exit_handlers()
    with ProcessCoordinator(supervisor_config.shutdown_grace) as coordinator:
        supervisor = Supervisor(
            config=supervisor_config,
            environment=environment,  # type: ignore[arg-type]
            runner=runner,  # type: ignore[arg-type]
            channel=channel,
            control=control,
            control_writer=control_writer,
        )
        coordinator.spawn("supervisor", supervisor.run)

        if config.watch.enabled:
            watcher = Watcher(
                root=config.watch.root,
                rules=config.watch.rules,
                ignore=config.watch.ignore,
                control=control_writer,
                debounce=config.watch.debounce,
            )
            coordinator.spawn("watcher", watcher.loop, close_fds=[control.fd])
        else:
            _LOGGER.info("Watching is disabled, file changes are not tracked")

        control.close()
        control_writer.close()

        while True:
            role, exit_code = coordinator.wait_any()
            if role == "supervisor":
                return exit_code
            _LOGGER.warning(f"Watcher exited with {exit_code}, file changes are no longer tracked")


def main(argv: list[str]) -> int:
    try:
        config = server_config.parse_config()
    except InvalidConfig as ex:
        print(f"prewarm: {ex}", file=sys.stderr)
        return 2

    logging.basicConfig(level=config.log_level, filename=config.log_file, format=_LOG_FORMAT)

    args = argv[1:]
    try:
        if args:
            return run_client(config, args)
        return run_server(config)
    except KeyboardInterrupt:
        return 130


def cli() -> None:
    sys.exit(main(sys.argv))


if __name__ == "__main__":
    cli()
