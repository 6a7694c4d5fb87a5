"""
The command channel: named FIFOs in the working directory shared by every
client and the supervisor. Requests travel over `<path>`, responses over
`<path>.out`.

A client holds an exclusive lock on `<path>.lock` for its whole
request/response cycle, which makes the channel single-slot. The request is
the arguments joined by spaces, terminated by the client closing its write
end. The response is whatever the worker writes, terminated by the last
writer detaching after the worker attached or was found gone.

The client attaches to the response FIFO before it sends the request. A
reader only sees a hang-up for writers that attached after it opened, so the
end of its response can never be missed.

Once the supervisor has read a request it moves the response FIFO the client
is attached to onto a private name (`<path>.out.<tag>`) and puts a fresh FIFO
at `<path>.out`. The worker for that request writes through the private name
only, so a run whose client went away cannot reach the next client.
"""

import errno
import fcntl
import io
import logging
import os
import pathlib
import select
from collections.abc import Generator, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

from result import Err, Ok, Result

from .control import ControlMessage, ControlReader
from .errors import FifoCreateFailed, FileOpenFailed
from .files import (
    READ_CHUNK,
    Mode,
    close_quietly,
    ensure_fifo,
    read_until_eof,
    retry_interrupted,
    try_open,
    write_all,
)

_LOGGER = logging.getLogger(__name__)

DEFAULT_CHANNEL = ".prewarm_ipc"


def encode_request(args: Sequence[str]) -> bytes:
    # filesystem encoding, so undecodable file names survive the trip
    return b" ".join(os.fsencode(arg) for arg in args)


def decode_request(data: bytes) -> list[str]:
    return [os.fsdecode(arg) for arg in data.split()]


def _discard_stale(fd: int) -> None:
    stale = 0
    while True:
        try:
            chunk = retry_interrupted(os.read, fd, READ_CHUNK)
        except BlockingIOError:
            break
        if not chunk:
            break
        stale += len(chunk)
    if stale:
        _LOGGER.info(f"Discarded {stale} bytes of an abandoned request")


class ResponseSink(io.RawIOBase):
    """
    Unbuffered write side of the channel, owned by a worker.

    Once the client stops listening every further write is dropped, so the
    run can still complete normally.
    """

    def __init__(self, fd: int | None) -> None:
        super().__init__()
        self._fd = fd

    @classmethod
    def open(cls, path: pathlib.Path) -> "ResponseSink":
        match try_open(path, Mode.W, nonblocking=True):
            case Ok(fd):
                os.set_blocking(fd, True)
                return cls(fd)
            case Err(open_failed):
                _LOGGER.info(f"No client attached to {path}: {open_failed.exception}")
                return cls(None)

    @property
    def disconnected(self) -> bool:
        return self._fd is None

    def writable(self) -> bool:
        return True

    def fileno(self) -> int:
        if self._fd is None:
            raise io.UnsupportedOperation("client disconnected")
        return self._fd

    def write(self, data) -> int:  # type: ignore[override]
        length = len(data)
        if self._fd is None:
            return length
        try:
            write_all(self._fd, bytes(data))
        except BrokenPipeError:
            _LOGGER.debug("Client stopped listening, dropping the rest of the response")
            self._disconnect()
        return length

    def text(self) -> io.TextIOWrapper:
        return io.TextIOWrapper(
            self,  # type: ignore[arg-type]
            encoding="utf-8",
            errors="replace",
            line_buffering=True,
            write_through=True,
        )

    def close(self) -> None:
        self._disconnect()
        super().close()

    def _disconnect(self) -> None:
        fd, self._fd = self._fd, None
        close_quietly(fd)


@dataclass
class CommandChannel:
    path: pathlib.Path

    @property
    def response_path(self) -> pathlib.Path:
        return self.path.with_name(f"{self.path.name}.out")

    @property
    def lock_path(self) -> pathlib.Path:
        return self.path.with_name(f"{self.path.name}.lock")

    def ensure(self) -> Result[pathlib.Path, FifoCreateFailed]:
        return ensure_fifo(self.response_path).and_then(lambda _: ensure_fifo(self.path))

    # client side

    @contextmanager
    def slot(self) -> Generator[None, None, None]:
        """
        Holds the channel's single slot. Blocks while another client is
        being serviced.

        Waiting clients hold no end of either FIFO. The holder keeps a read
        end of the request FIFO open for the whole cycle, so its request
        stays buffered even while the supervisor is between reads.

        Bytes already buffered when the slot is taken were left by a client
        that gave up before its request was read, and are discarded.
        """

        with open(self.lock_path, "ab") as lock:
            retry_interrupted(fcntl.flock, lock.fileno(), fcntl.LOCK_EX)
            fd = self._open(self.path, Mode.R, nonblocking=True)
            try:
                _discard_stale(fd)
                yield
            finally:
                os.close(fd)

    def send(self, args: Sequence[str]) -> Iterator[bytes]:
        """
        Sends one request and yields the response as it streams in. An empty
        request is delivered but has no response.
        """

        with self.slot():
            # attached before the request goes out, so any writer seen on
            # the response side belongs to this request
            response_fd = self._open(self.response_path, Mode.R, nonblocking=True) if args else None
            try:
                fd = self._open(self.path, Mode.W)
                try:
                    write_all(fd, encode_request(args))
                finally:
                    os.close(fd)

                if response_fd is None:
                    return
                yield from self._stream(response_fd)
            finally:
                close_quietly(response_fd)

    def _stream(self, fd: int) -> Iterator[bytes]:
        while True:
            select.select([fd], [], [])
            try:
                chunk = os.read(fd, READ_CHUNK)
            except BlockingIOError:
                continue
            if not chunk:
                return
            yield chunk

    # supervisor side

    def receive(self, control: ControlReader) -> list[str] | ControlMessage:
        """
        Waits for the next request, or for a control message, whichever
        comes first. A control message wins when both are ready; a pending
        request stays in the FIFO for the next call.
        """

        while True:
            if control.buffered:
                message = control.receive()
                if message is not None:
                    return message

            fd = self._open(self.path, Mode.R, nonblocking=True)
            try:
                readable, _, _ = select.select([fd, control.fd], [], [])
                if control.fd in readable:
                    message = control.receive()
                    if message is not None:
                        return message
                    continue

                os.set_blocking(fd, True)
                data = read_until_eof(fd)
            finally:
                os.close(fd)

            _LOGGER.debug(f"Read request {data!r}")
            return decode_request(data)

    def claim_response(self, tag: str) -> Result[pathlib.Path, FifoCreateFailed]:
        """
        Gives the client of the request just read a private response FIFO:
        links the current one to `<path>.out.<tag>`, then atomically
        replaces `<path>.out` with a fresh FIFO for the next client.
        """

        private = self.response_path.with_name(f"{self.response_path.name}.{tag}")
        fresh = self.response_path.with_name(f"{self.response_path.name}.new")
        try:
            private.unlink(missing_ok=True)
            os.link(self.response_path, private)
        except OSError as link_exception:
            return Err(FifoCreateFailed(private, link_exception))

        match ensure_fifo(fresh):
            case Ok():
                pass
            case Err() as create_failed:
                private.unlink(missing_ok=True)
                return create_failed
        try:
            os.replace(fresh, self.response_path)
        except OSError as replace_exception:
            private.unlink(missing_ok=True)
            return Err(FifoCreateFailed(self.response_path, replace_exception))

        _LOGGER.debug(f"Response goes through {private}")
        return Ok(private)

    def release_response(self, path: pathlib.Path) -> None:
        if path == self.response_path:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as ex:
            _LOGGER.warning(f"Could not remove {path}: {ex}")

    def close_out(self, path: pathlib.Path) -> None:
        """
        Attaches and detaches as a writer so a client still waiting for a
        response on path sees end of stream.
        """

        match try_open(path, Mode.W, nonblocking=True):
            case Ok(fd):
                os.close(fd)
            case Err(FileOpenFailed(exception=OSError(errno=errno.ENXIO))):
                pass
            case Err(open_failed):
                _LOGGER.warning(f"Could not close out {path}: {open_failed.exception}")

    def _open(self, path: pathlib.Path, mode: Mode, nonblocking: bool = False) -> int:
        match try_open(path, mode, nonblocking):
            case Ok(fd):
                return fd
            case Err(open_failed):
                raise open_failed.exception
