from __future__ import annotations

import os

import pytest

from prewarm import control, token_io
from prewarm.control import ControlKind, ControlMessage, ControlReader, ControlWriter


@pytest.fixture()
def control_pipe():
    reader, writer = token_io.open_pipe()
    yield ControlReader(reader), ControlWriter(writer)
    reader.close()
    writer.close()


def test_enum_is_encoded_by_name() -> None:
    encoded = control.encode(ControlMessage(ControlKind.RELOAD, ["app/models.py"]))
    assert '"RELOAD"' in encoded
    assert control.decode(encoded) == ControlMessage(ControlKind.RELOAD, ["app/models.py"])


@pytest.mark.parametrize("token", ["not json", '{"kind": "EXPLODE"}', '{"paths": []}'])
def test_malformed_messages_are_ignored(token: str) -> None:
    assert control.decode(token) is None


def test_messages_arrive_in_order(control_pipe) -> None:
    reader, writer = control_pipe
    writer.send(ControlKind.RELOAD, ["b.py", "a.py"])
    writer.send(ControlKind.SHUTDOWN)

    first = reader.receive()
    assert first == ControlMessage(ControlKind.RELOAD, ["a.py", "b.py"])
    assert reader.buffered
    assert reader.receive() == ControlMessage(ControlKind.SHUTDOWN, [])


def test_reported_paths_are_capped(control_pipe) -> None:
    reader, writer = control_pipe
    writer.send(ControlKind.RESTART, [f"file{i}.py" for i in range(100)])

    message = reader.receive()
    assert message is not None
    assert len(message.paths) == control.MAX_REPORTED_PATHS


def test_receive_returns_none_when_writers_are_gone(control_pipe) -> None:
    reader, writer = control_pipe
    os.write(writer.writer.fd, b"garbage\n")
    writer.close()
    assert reader.receive() is None
    assert reader.receive() is None
