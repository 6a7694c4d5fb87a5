import logging
import os
import pathlib
import re
import shlex
from collections.abc import Mapping
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from dataclasses import dataclass, field

from .channel import DEFAULT_CHANNEL
from .errors import InvalidConfig
from .watch import DEFAULT_IGNORE, DEFAULT_RELOAD, DEFAULT_RESTART, WatchAction, WatchRule

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = ".prewarm.ini"
DEFAULT_ENVIRONMENT = "prewarm.hooks:NullEnvironment"
MODULE_ENVIRONMENT = "prewarm.hooks:ModuleEnvironment"
DEFAULT_RUNNER = "prewarm.hooks:PytestRunner"


@dataclass(frozen=True)
class SupervisorConfig:
    environment: str = DEFAULT_ENVIRONMENT
    environment_kwargs: dict[str, object] = field(default_factory=dict)
    runner: str = DEFAULT_RUNNER
    preload_worker: bool = True
    reload_cancels_run: bool = True
    run_timeout: float | None = None
    shutdown_grace: float = 5.0


@dataclass(frozen=True)
class WatchConfig:
    enabled: bool = True
    root: pathlib.Path = pathlib.Path(".")
    rules: list[WatchRule] = field(default_factory=list)
    ignore: list[re.Pattern[str]] = field(default_factory=list)
    debounce: float = 0.2


@dataclass(frozen=True)
class PrewarmConfig:
    log_level: int
    log_file: str | None
    channel_path: pathlib.Path
    supervisor: SupervisorConfig
    watch: WatchConfig


@dataclass
class _ConfigFilePath:
    dir: pathlib.Path | None

    def maybe_relative(self, path_str: str | None) -> pathlib.Path | None:
        if not path_str:
            return None

        input_path = pathlib.Path(path_str).expanduser()

        if path_str.startswith("./") and self.dir:
            return self.dir.joinpath(input_path)

        return input_path


@dataclass
class _ConfigFile:
    # [core]
    log_level: str | None = None
    log_file: pathlib.Path | None = None
    channel: pathlib.Path | None = None
    shutdown_grace: float | None = None

    # [supervisor]
    environment: str | None = None
    runner: str | None = None
    preload_modules: list[str] | None = None
    preload_worker: bool | None = None
    reload_cancels_run: bool | None = None
    run_timeout: float | None = None

    # [watch]
    watch_enabled: bool | None = None
    watch_root: pathlib.Path | None = None
    restart: list[str] | None = None
    reload: list[str] | None = None
    ignore: list[str] | None = None
    debounce: float | None = None


def _patterns(config_parser: ConfigParser, option: str) -> list[str] | None:
    raw = config_parser.get("watch", option, fallback=None)
    if raw is None:
        return None
    return [line.strip() for line in raw.splitlines() if line.strip()]


def _get(config_parser: ConfigParser, getter: str, section: str, option: str):
    try:
        return getattr(config_parser, getter)(section, option, fallback=None)
    except ValueError as ex:
        raise InvalidConfig(f"[{section}] {option}: {ex}") from ex


def _parse_file(path: pathlib.Path | None) -> _ConfigFile:
    if not path:
        return _ConfigFile()

    config_parser = ConfigParser()
    try:
        if not config_parser.read(path):
            raise InvalidConfig(f"Could not read config file {path}")
    except ConfigParserError as ex:
        raise InvalidConfig(f"Could not parse config file {path}: {ex}") from ex
    config_dir = _ConfigFilePath(path.parent)

    preload_modules: list[str] | None
    match config_parser.get("supervisor", "preload_modules", fallback=None):
        case str() as modules_str:
            preload_modules = shlex.split(modules_str)
        case _:
            preload_modules = None

    return _ConfigFile(
        log_level=config_parser.get("core", "log_level", fallback=None),
        log_file=config_dir.maybe_relative(config_parser.get("core", "log_file", fallback=None)),
        channel=config_dir.maybe_relative(config_parser.get("core", "channel", fallback=None)),
        shutdown_grace=_get(config_parser, "getfloat", "core", "shutdown_grace"),
        environment=config_parser.get("supervisor", "environment", fallback=None),
        runner=config_parser.get("supervisor", "runner", fallback=None),
        preload_modules=preload_modules,
        preload_worker=_get(config_parser, "getboolean", "supervisor", "preload_worker"),
        reload_cancels_run=_get(config_parser, "getboolean", "supervisor", "reload_cancels_run"),
        run_timeout=_get(config_parser, "getfloat", "supervisor", "run_timeout"),
        watch_enabled=_get(config_parser, "getboolean", "watch", "enabled"),
        watch_root=config_dir.maybe_relative(config_parser.get("watch", "root", fallback=None)),
        restart=_patterns(config_parser, "restart"),
        reload=_patterns(config_parser, "reload"),
        ignore=_patterns(config_parser, "ignore"),
        debounce=_get(config_parser, "getfloat", "watch", "debounce"),
    )


def _compile(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as ex:
        raise InvalidConfig(f"Invalid watch pattern {pattern!r}: {ex}") from ex


def _find_config_file(env: Mapping[str, str], cwd: pathlib.Path) -> pathlib.Path | None:
    if env.get("PREWARM_CONFIG"):
        return pathlib.Path(env["PREWARM_CONFIG"]).expanduser()

    default = cwd.joinpath(DEFAULT_CONFIG_FILE)
    if default.exists():
        return default
    return None


def parse_config(
    env: Mapping[str, str] | None = None, cwd: pathlib.Path | None = None
) -> PrewarmConfig:
    env = os.environ if env is None else env
    cwd = pathlib.Path(os.getcwd()) if cwd is None else cwd
    file = _parse_file(_find_config_file(env, cwd))

    log_level_name = (env.get("PREWARM_LOG_LEVEL") or file.log_level or "INFO").upper()
    levels = logging.getLevelNamesMapping()
    if log_level_name not in levels:
        raise InvalidConfig(f"Unknown log level {log_level_name}")

    log_file = env.get("PREWARM_LOG_FILE") or (str(file.log_file) if file.log_file else None)

    environment = file.environment or (
        MODULE_ENVIRONMENT if file.preload_modules else DEFAULT_ENVIRONMENT
    )
    environment_kwargs: dict[str, object] = {}
    if file.preload_modules:
        environment_kwargs["modules"] = file.preload_modules

    rules = [
        WatchRule(_compile(pattern), WatchAction.RESTART)
        for pattern in (file.restart if file.restart is not None else DEFAULT_RESTART)
    ] + [
        WatchRule(_compile(pattern), WatchAction.RELOAD)
        for pattern in (file.reload if file.reload is not None else DEFAULT_RELOAD)
    ]
    ignore = [
        _compile(pattern)
        for pattern in (file.ignore if file.ignore is not None else DEFAULT_IGNORE)
    ]

    for name, value in (
        ("run_timeout", file.run_timeout),
        ("shutdown_grace", file.shutdown_grace),
        ("debounce", file.debounce),
    ):
        if value is not None and value < 0:
            raise InvalidConfig(f"{name} must not be negative, got {value}")

    return PrewarmConfig(
        log_level=levels[log_level_name],
        log_file=log_file,
        channel_path=cwd.joinpath(file.channel or DEFAULT_CHANNEL),
        supervisor=SupervisorConfig(
            environment=environment,
            environment_kwargs=environment_kwargs,
            runner=file.runner or DEFAULT_RUNNER,
            preload_worker=True if file.preload_worker is None else file.preload_worker,
            reload_cancels_run=(
                True if file.reload_cancels_run is None else file.reload_cancels_run
            ),
            run_timeout=file.run_timeout or None,
            shutdown_grace=5.0 if file.shutdown_grace is None else file.shutdown_grace,
        ),
        watch=WatchConfig(
            enabled=True if file.watch_enabled is None else file.watch_enabled,
            root=cwd.joinpath(file.watch_root or "."),
            rules=rules,
            ignore=ignore,
            debounce=0.2 if file.debounce is None else file.debounce,
        ),
    )
