"""
Tests for the HandlerSocket wire codec.
"""

from __future__ import annotations

import pytest

from hscache.exceptions import ProtocolError
from hscache.protocol import (
    encode_auth,
    encode_open_index,
    encode_operation,
    escape,
    parse_response,
    unescape,
)
from hscache.types import ModOp, Operation, Operator


class TestEscaping:
    """Tests for token escaping."""

    def test_plain_bytes_unchanged(self) -> None:
        """Bytes at or above 0x10 are written verbatim."""
        assert escape(b"hello world") == b"hello world"

    def test_control_bytes_are_shifted(self) -> None:
        """TAB, LF and NUL are prefixed with 0x01 and shifted by 0x40."""
        assert escape(b"a\tb\nc\x00") == b"a\x01\x49b\x01\x4ac\x01\x40"

    def test_none_is_null_token(self) -> None:
        """SQL NULL is the single byte 0x00."""
        assert escape(None) == b"\x00"
        assert unescape(b"\x00") is None

    def test_empty_string_is_empty_token(self) -> None:
        """The empty string is a zero-length token, distinct from NULL."""
        assert escape(b"") == b""
        assert unescape(b"") == b""

    def test_unescape_restores_control_bytes(self) -> None:
        """Escaped tokens decode back to the original bytes."""
        raw = bytes(range(0, 0x20))
        assert unescape(escape(raw)) == raw

    def test_truncated_escape_raises(self) -> None:
        """A trailing 0x01 with nothing after it is malformed."""
        with pytest.raises(ProtocolError):
            unescape(b"abc\x01")

    def test_escape_outside_control_range_raises(self) -> None:
        """0x01 must be followed by a shifted control byte."""
        with pytest.raises(ProtocolError):
            parse_response(b"0\t1\t\x01\x00\n")
        with pytest.raises(ProtocolError):
            unescape(b"\x01\x50")


class TestRequestEncoding:
    """Tests for request line encoding."""

    def test_open_index(self) -> None:
        """Open requests carry id, db, table, index and comma-joined columns."""
        line = encode_open_index(1, "appdb", "chi_Default", "PRIMARY", ["key", "value"])
        assert line == b"P\t1\tappdb\tchi_Default\tPRIMARY\tkey,value\n"

    def test_auth(self) -> None:
        """Auth requests use type 1."""
        assert encode_auth("s3cret") == b"A\t1\ts3cret\n"

    def test_find(self) -> None:
        """Finds carry key count, key, limit and offset."""
        op = Operation.find(1, b"k1")
        assert encode_operation(op) == b"1\t=\t1\tk1\t1\t0\n"

    def test_delete(self) -> None:
        """Deletes append the D modification operator."""
        op = Operation.delete(2, "k1")
        assert encode_operation(op) == b"2\t=\t1\tk1\t1\t0\tD\n"

    def test_update(self) -> None:
        """Updates append U and the new row values."""
        op = Operation.update(2, b"k1", (b"k1", b"v2"))
        assert encode_operation(op) == b"2\t=\t1\tk1\t1\t0\tU\tk1\tv2\n"

    def test_insert_has_no_limit(self) -> None:
        """Inserts are the + operator followed by the row."""
        op = Operation.insert(2, (b"k1", b"v1"))
        assert encode_operation(op) == b"2\t+\t2\tk1\tv1\n"

    def test_operation_fields_escaped(self) -> None:
        """Keys with control bytes cannot break the line framing."""
        op = Operation(1, Operator.EQ, (b"a\nb",), 1, 0, ModOp.DELETE)
        line = encode_operation(op)
        assert line.count(b"\n") == 1
        assert b"a\x01\x4ab" in line


class TestResponseParsing:
    """Tests for response parsing."""

    def test_find_hit(self) -> None:
        """A hit returns one row of projected columns."""
        result = parse_response(b"0\t1\tcached value\n")
        assert result.ok
        assert result.rows == ((b"cached value",),)

    def test_find_miss(self) -> None:
        """A miss is status 0 with no fields."""
        result = parse_response(b"0\t1\n")
        assert result.ok
        assert result.rows == ()

    def test_multi_column_rows(self) -> None:
        """Fields are grouped by column count."""
        result = parse_response(b"0\t2\tk1\tv1\tk2\tv2\n")
        assert result.rows == ((b"k1", b"v1"), (b"k2", b"v2"))

    def test_modification_count(self) -> None:
        """Modification responses report the affected row count."""
        assert parse_response(b"0\t1\t1\n").affected == 1
        assert parse_response(b"0\t1\t0\n").affected == 0

    def test_error_carries_server_text(self) -> None:
        """Non-zero statuses expose the error text."""
        result = parse_response(b"1\t1\topen_table\n")
        assert not result.ok
        assert result.status == 1
        assert result.error == "open_table"

    def test_error_without_text(self) -> None:
        """Missing error text falls back to the status."""
        result = parse_response(b"2\t1\n")
        assert result.error == "status 2"

    def test_malformed_line(self) -> None:
        """A single token is not a response."""
        with pytest.raises(ProtocolError):
            parse_response(b"0\n")

    def test_non_numeric_status(self) -> None:
        """Status and column count must be integers."""
        with pytest.raises(ProtocolError):
            parse_response(b"ok\t1\n")

    def test_ragged_rows(self) -> None:
        """Field count must be a multiple of the column count."""
        with pytest.raises(ProtocolError):
            parse_response(b"0\t2\tk1\tv1\tk2\n")
