import enum
import errno
import logging
import os
import pathlib
import stat
from collections.abc import Callable
from typing import TypeVar

from result import Err, Ok, Result

from .errors import FifoCreateFailed, FileOpenFailed

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")

READ_CHUNK = 4096


def retry_interrupted(call: Callable[..., _T], *args) -> _T:
    """
    Runs a blocking system call, retrying it whenever it is interrupted
    by a signal before completing.
    """

    while True:
        try:
            return call(*args)
        except InterruptedError:
            _LOGGER.debug(f"{getattr(call, '__name__', call)} interrupted, retrying")


def ensure_fifo(path: pathlib.Path) -> Result[pathlib.Path, FifoCreateFailed]:
    try:
        os.mkfifo(path)
        _LOGGER.debug(f"Made fifo {path}")
        return Ok(path)
    except FileExistsError as exists:
        if stat.S_ISFIFO(os.stat(path).st_mode):
            return Ok(path)
        return Err(FifoCreateFailed(path, exists))
    except Exception as mkfifo_exception:
        return Err(FifoCreateFailed(path, mkfifo_exception))


class Mode(enum.Flag):
    R = 1
    W = 2

    def to_flag(self) -> int:
        match self:
            case Mode.R:
                return os.O_RDONLY
            case Mode.W:
                return os.O_WRONLY
            case _:
                return os.O_RDWR


def try_open(
    path: pathlib.Path, mode: Mode, nonblocking: bool = False
) -> Result[int, FileOpenFailed]:
    flags = mode.to_flag()
    if nonblocking:
        flags |= os.O_NONBLOCK
    try:
        return Ok(retry_interrupted(os.open, path, flags))
    except OSError as open_exception:
        if open_exception.errno != errno.ENXIO:
            _LOGGER.error(f"Failed to open file {path} in {mode}: {open_exception}")
        return Err(FileOpenFailed(path, open_exception))


def read_until_eof(fd: int) -> bytes:
    chunks: list[bytes] = []
    while chunk := retry_interrupted(os.read, fd, READ_CHUNK):
        chunks.append(chunk)
    return b"".join(chunks)


def write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = retry_interrupted(os.write, fd, view)
        view = view[written:]


def close_quietly(fd: int | None) -> None:
    if fd is None or fd < 0:
        return
    try:
        os.close(fd)
    except OSError:
        pass
