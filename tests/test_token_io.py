from __future__ import annotations

import os

from result import Err, Ok

from prewarm import token_io


def test_tokens_survive_newlines_and_backslashes() -> None:
    reader, writer = token_io.open_pipe()
    with reader, writer:
        writer.write(["plain", "two\nlines", "back\\slash", ""])
        assert reader.read_multiple(4) == ["plain", "two\nlines", "back\\slash", ""]


def test_read_returns_none_after_writer_closes() -> None:
    reader, writer = token_io.open_pipe()
    with reader:
        writer.write(["only"])
        writer.close()
        assert reader.read() == "only"
        assert reader.read() is None


def test_partial_token_is_returned_at_eof() -> None:
    reader, writer = token_io.open_pipe()
    with reader:
        with writer:
            os.write(writer.fd, b"unterminated")
        assert reader.read() == "unterminated"


def test_read_multiple_stops_early_at_eof() -> None:
    reader, writer = token_io.open_pipe()
    with reader:
        with writer:
            writer.write(["a", "b"])
        assert reader.read_multiple(3) == ["a", "b"]


def test_read_int() -> None:
    reader, writer = token_io.open_pipe()
    with reader:
        with writer:
            writer.write(["42", "nope"])
        assert reader.read_int() == Ok(42)
        assert reader.read_int() == Err("nope")
        assert reader.read_int() == Err(None)


def test_buffered_reports_complete_tokens_only() -> None:
    reader, writer = token_io.open_pipe()
    with reader, writer:
        writer.write(["first", "second"])
        assert not reader.buffered
        assert reader.read() == "first"
        assert reader.buffered
        assert reader.read() == "second"
        assert not reader.buffered


def test_undecodable_file_names_pass_through() -> None:
    name = os.fsdecode(b"tests/test_\xff.py")
    reader, writer = token_io.open_pipe()
    with reader, writer:
        writer.write([name])
        assert reader.read() == name
