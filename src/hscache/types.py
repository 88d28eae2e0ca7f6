"""
Core types for the HandlerSocket cache driver.

This module defines the data structures shared by the protocol codec,
the index client and the cache driver:
- Enums for search operators, modification operators and driver states
- Frozen dataclasses for operations and their results
- The tagged LookupResult used to tell a miss apart from an error
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

Field = Union[bytes, None]
KeyLike = Union[bytes, str]


def to_bytes(value: KeyLike) -> bytes:
    """Encode a str as UTF-8, pass bytes through unchanged."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    raise TypeError(f"expected bytes or str, got {type(value).__name__}")


class Operator(str, Enum):
    """Search operators understood by HandlerSocket.

    INSERT is not a comparison but shares the operator slot of a request line.
    """

    EQ = "="
    GE = ">="
    LE = "<="
    GT = ">"
    LT = "<"
    INSERT = "+"


class ModOp(str, Enum):
    """Modification operators appended to a find request."""

    UPDATE = "U"
    DELETE = "D"


class LookupStatus(str, Enum):
    """Outcome of a point lookup."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


class DriverState(str, Enum):
    """Lifecycle of a CacheDriver."""

    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"
    CLOSED = "closed"


class UpsertMode(str, Enum):
    """How CacheDriver.store writes an entry."""

    BATCH = "batch"  # delete + insert pipelined over HandlerSocket
    SQL = "sql"  # INSERT ... ON DUPLICATE KEY UPDATE over the SQL connection


@dataclass(frozen=True)
class Operation:
    """One request against an opened index handle.

    Attributes:
        handle_id: Handle previously bound with open_index.
        operator: Comparison operator, or Operator.INSERT.
        key: Key tuple for finds; the full row for inserts.
        limit: Maximum rows matched.
        offset: Rows skipped before matching.
        mod_op: Optional modification applied to matched rows.
        mod_args: New row values for ModOp.UPDATE.
    """

    handle_id: int
    operator: Operator
    key: tuple[Field, ...]
    limit: int = 1
    offset: int = 0
    mod_op: ModOp | None = None
    mod_args: tuple[Field, ...] = ()

    @classmethod
    def find(cls, handle_id: int, key: KeyLike, limit: int = 1, offset: int = 0) -> Operation:
        return cls(handle_id, Operator.EQ, (to_bytes(key),), limit, offset)

    @classmethod
    def delete(cls, handle_id: int, key: KeyLike) -> Operation:
        return cls(handle_id, Operator.EQ, (to_bytes(key),), 1, 0, ModOp.DELETE)

    @classmethod
    def update(cls, handle_id: int, key: KeyLike, values: tuple[Field, ...]) -> Operation:
        return cls(handle_id, Operator.EQ, (to_bytes(key),), 1, 0, ModOp.UPDATE, values)

    @classmethod
    def insert(cls, handle_id: int, values: tuple[Field, ...]) -> Operation:
        return cls(handle_id, Operator.INSERT, values)

    @property
    def is_insert(self) -> bool:
        return self.operator is Operator.INSERT


@dataclass(frozen=True)
class OpResult:
    """Decoded response to one operation.

    Attributes:
        status: Server status code, 0 on success.
        num_columns: Width of each returned row.
        rows: Projected column values of matched rows (finds only).
        error: Server error text when status is non-zero.
    """

    status: int
    num_columns: int = 0
    rows: tuple[tuple[Field, ...], ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == 0

    @property
    def affected(self) -> int:
        """Rows changed by a modification request."""
        if not self.rows or not self.rows[0] or self.rows[0][0] is None:
            return 0
        try:
            return int(self.rows[0][0])
        except ValueError:
            return 0


@dataclass(frozen=True)
class LookupResult:
    """Tagged result of a point lookup: FOUND(value), NOT_FOUND or ERROR(detail)."""

    status: LookupStatus
    value: Field = None
    error: str | None = None
    context: dict[str, object] = field(default_factory=dict)

    @classmethod
    def found(cls, value: Field) -> LookupResult:
        return cls(LookupStatus.FOUND, value=value)

    @classmethod
    def not_found(cls) -> LookupResult:
        return cls(LookupStatus.NOT_FOUND)

    @classmethod
    def failed(cls, error: str, **context: object) -> LookupResult:
        return cls(LookupStatus.ERROR, error=error, context=dict(context))

    @property
    def is_found(self) -> bool:
        return self.status is LookupStatus.FOUND
