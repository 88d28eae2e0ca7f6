"""
HandlerSocket wire codec.

Requests and responses are single lines of TAB separated tokens ending in LF.
Inside a token, bytes 0x00-0x0f are written as 0x01 followed by the byte
plus 0x40. A token consisting of the single byte 0x00 is SQL NULL; an empty
token is the empty string.

Responses have the form ``<status> <ncols> <field>...``. A non-zero status
carries the server's error text as its only field.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from hscache.exceptions import ProtocolError
from hscache.types import Field, Operation, OpResult

TAB = b"\t"
LF = b"\n"
NULL_TOKEN = b"\x00"
_ESCAPE_PREFIX = 0x01
_ESCAPE_SHIFT = 0x40


def escape(value: Field) -> bytes:
    """Encode one field as a request token."""
    if value is None:
        return NULL_TOKEN
    if not any(b < 0x10 for b in value):
        return value
    out = bytearray()
    for b in value:
        if b < 0x10:
            out.append(_ESCAPE_PREFIX)
            out.append(b + _ESCAPE_SHIFT)
        else:
            out.append(b)
    return bytes(out)


def unescape(token: bytes) -> Field:
    """Decode one response token back into a field."""
    if token == NULL_TOKEN:
        return None
    if _ESCAPE_PREFIX not in token:
        return token
    out = bytearray()
    it = iter(token)
    for b in it:
        if b == _ESCAPE_PREFIX:
            nxt = next(it, None)
            if nxt is None:
                raise ProtocolError("Truncated escape sequence in token", {"token": token})
            if not _ESCAPE_SHIFT <= nxt < _ESCAPE_SHIFT + 0x10:
                raise ProtocolError("Invalid escape sequence in token", {"token": token})
            out.append(nxt - _ESCAPE_SHIFT)
        else:
            out.append(b)
    return bytes(out)


def _line(tokens: Iterable[bytes]) -> bytes:
    return TAB.join(tokens) + LF


def _text(value: object) -> bytes:
    return escape(str(value).encode("utf-8"))


def encode_open_index(
    handle_id: int,
    database: str,
    table: str,
    index_name: str,
    columns: Sequence[str],
) -> bytes:
    """Build a ``P`` request binding handle_id to an index."""
    return _line([
        b"P",
        _text(handle_id),
        _text(database),
        _text(table),
        _text(index_name),
        _text(",".join(columns)),
    ])


def encode_auth(secret: str) -> bytes:
    """Build an ``A`` request for plain-text authentication (type 1)."""
    return _line([b"A", b"1", _text(secret)])


def encode_operation(op: Operation) -> bytes:
    """Build a find, find-and-modify or insert request line."""
    tokens = [_text(op.handle_id), _text(op.operator.value), _text(len(op.key))]
    tokens.extend(escape(v) for v in op.key)
    if op.is_insert:
        return _line(tokens)
    tokens.append(_text(op.limit))
    tokens.append(_text(op.offset))
    if op.mod_op is not None:
        tokens.append(_text(op.mod_op.value))
        tokens.extend(escape(v) for v in op.mod_args)
    return _line(tokens)


def parse_response(line: bytes) -> OpResult:
    """Decode one response line.

    Raises:
        ProtocolError: If the line is not a well-formed response.
    """
    if line.endswith(LF):
        line = line[:-1]
    tokens = line.split(TAB)
    if len(tokens) < 2:
        raise ProtocolError("Malformed response line", {"line": line[:80]})
    try:
        status = int(tokens[0])
        num_columns = int(tokens[1])
    except ValueError as e:
        raise ProtocolError("Non-numeric status in response", {"line": line[:80]}) from e

    fields = [unescape(t) for t in tokens[2:]]

    if status != 0:
        detail = fields[0] if fields and fields[0] is not None else b""
        return OpResult(
            status=status,
            num_columns=num_columns,
            error=detail.decode("utf-8", errors="replace") or f"status {status}",
        )

    if not fields:
        return OpResult(status=0, num_columns=num_columns)
    if num_columns <= 0 or len(fields) % num_columns:
        raise ProtocolError(
            "Response field count does not match column count",
            {"num_columns": num_columns, "fields": len(fields)},
        )
    rows = tuple(
        tuple(fields[i:i + num_columns]) for i in range(0, len(fields), num_columns)
    )
    return OpResult(status=0, num_columns=num_columns, rows=rows)
