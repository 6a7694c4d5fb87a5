import logging
from dataclasses import dataclass, field
from enum import StrEnum, auto

from dataclasses_json import DataClassJsonMixin, config
from marshmallow import ValidationError, fields

from .token_io import TokenReader, TokenWriter

_LOGGER = logging.getLogger(__name__)

# keeps every message well under PIPE_BUF so writes stay atomic
MAX_REPORTED_PATHS = 10


class ControlKind(StrEnum):
    RESTART = auto()
    RELOAD = auto()
    SHUTDOWN = auto()


@dataclass
class ControlMessage(DataClassJsonMixin):
    kind: ControlKind = field(
        metadata=config(mm_field=fields.Enum(ControlKind, by_value=False, required=True))
    )
    paths: list[str] = field(default_factory=list)


_SCHEMA = ControlMessage.schema()


def encode(message: ControlMessage) -> str:
    return _SCHEMA.dumps(message)


def decode(token: str) -> ControlMessage | None:
    try:
        return _SCHEMA.loads(token)
    except (ValidationError, ValueError, KeyError, TypeError) as ex:
        _LOGGER.warning(f"Ignoring malformed control message {token!r}: {ex}")
        return None


@dataclass
class ControlWriter:
    writer: TokenWriter

    def send(self, kind: ControlKind, paths: list[str] | None = None) -> None:
        message = ControlMessage(kind=kind, paths=sorted(paths or [])[:MAX_REPORTED_PATHS])
        _LOGGER.debug(f"Sending control message {message}")
        self.writer.write([encode(message)])

    def close(self) -> None:
        self.writer.close()


@dataclass
class ControlReader:
    reader: TokenReader

    @property
    def fd(self) -> int:
        return self.reader.fd

    @property
    def buffered(self) -> bool:
        return self.reader.buffered

    def receive(self) -> ControlMessage | None:
        """
        Reads the next control message. Only call once the fd is readable
        or a message is buffered. Returns None for malformed messages and
        once every writer has gone away.
        """

        token = self.reader.read()
        if token is None:
            return None
        return decode(token)

    def close(self) -> None:
        self.reader.close()
