import logging
import os
from dataclasses import dataclass
from typing import Self

from result import Err, Ok, Result

from .files import READ_CHUNK, close_quietly, retry_interrupted, write_all

_LOGGER = logging.getLogger(__name__)


@dataclass
class TokenReader:
    fd: int

    def __post_init__(self) -> None:
        self._buffer: bytes = b""
        self._eof = False

    @property
    def buffered(self) -> bool:
        """Whether a complete token can be read without blocking."""
        return b"\n" in self._buffer

    def read(self) -> str | None:
        """
        Blocking read for a single token. Returns None once the writer has
        closed and nothing is left to read.
        """

        newline_ind = self._buffer.find(b"\n")
        while newline_ind < 0:
            chunk = b"" if self._eof else retry_interrupted(os.read, self.fd, READ_CHUNK)
            if chunk:
                self._buffer += chunk
                newline_ind = self._buffer.find(b"\n")
            else:
                # writer closed, hand out any partial token
                self._eof = True
                if not self._buffer:
                    return None
                result = _unescape(self._buffer.decode(errors="surrogateescape"))
                self._buffer = b""
                return result

        result = _unescape(self._buffer[0:newline_ind].decode(errors="surrogateescape"))
        self._buffer = self._buffer[newline_ind + 1 :]
        return result

    def read_multiple(self, num: int) -> list[str]:
        """
        Blocking read for num tokens, returning fewer if the writer closes
        early.
        """

        result: list[str] = []
        while len(result) < num:
            token = self.read()
            if token is None:
                break
            result.append(token)
        return result

    def read_int(self) -> Result[int, str | None]:
        token = self.read()
        try:
            return Ok(int(token))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return Err(token)

    def close(self) -> None:
        close_quietly(self.fd)
        self.fd = -1

    def __enter__(self) -> Self:
        return self

    def __exit__(self, type, value, tb) -> None:
        self.close()


@dataclass
class TokenWriter:
    fd: int

    def write(self, tokens: list[str]) -> None:
        """
        Blocking write for a list of tokens, as a single write.
        """

        _LOGGER.debug(f"Writing {tokens=}")

        data_str = "".join(_escape(token) + "\n" for token in tokens)
        write_all(self.fd, data_str.encode(errors="surrogateescape"))

    def close(self) -> None:
        close_quietly(self.fd)
        self.fd = -1

    def __enter__(self) -> Self:
        return self

    def __exit__(self, type, value, tb) -> None:
        self.close()


def _escape(token: str) -> str:
    """
    Escapes newlines and backslashes.
    """

    return token.replace("\\", "\\\\").replace("\n", "\\n")


def _unescape(token: str) -> str:
    """
    Using backslash as the escape character, this unescapes the token in a
    fairly forgiving way:
        - backslash -> backslash
        - n -> newline
        - end of line -> backslash
        - any other char -> that char
    """

    chars: list[str] = []
    i = 0
    while i < len(token):
        c = token[i]
        i += 1
        if c != "\\" or i >= len(token):
            chars.append(c)
            continue
        c = token[i]
        i += 1
        chars.append("\n" if c == "n" else c)
    return "".join(chars)


def open_pipe() -> tuple[TokenReader, TokenWriter]:
    read_fd, write_fd = os.pipe()
    return TokenReader(read_fd), TokenWriter(write_fd)
