"""
HandlerSocket index client.

An IndexClient owns one channel and the set of index handles bound on it.
Handles are small integers chosen by the caller and opened once with
open_index; every later request names the handle instead of a table.

Usage:
    client = IndexClient("db1", 9998)
    client.connect()
    client.open_index(1, "app", "chi_Default", "PRIMARY", ["value"])
    result = client.lookup(1, b"some-key")
    if result.is_found:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from hscache.channel import Channel
from hscache.exceptions import ChannelConnectionError, HandleOpenError, ProtocolError
from hscache.logging import get_logger
from hscache.protocol import encode_auth, encode_open_index, encode_operation, parse_response
from hscache.types import (
    Field,
    KeyLike,
    LookupResult,
    ModOp,
    Operation,
    Operator,
    OpResult,
    to_bytes,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class IndexBinding:
    """What a handle id was opened against."""

    database: str
    table: str
    index_name: str
    columns: tuple[str, ...]


class HandleRegistry:
    """Handle ids bound on one channel.

    The server rejects nothing but a malformed open, so reuse of an id is
    caught here. Ids are only unique per channel: callers that share a
    server connection between several drivers must coordinate ids themselves.
    """

    def __init__(self) -> None:
        self._bound: dict[int, IndexBinding] = {}

    def reserve(self, handle_id: int, binding: IndexBinding) -> None:
        if handle_id < 0:
            raise HandleOpenError("Handle id must be non-negative", {"handle_id": handle_id})
        if handle_id in self._bound:
            raise HandleOpenError(
                "Handle id already bound on this channel",
                {"handle_id": handle_id, "table": self._bound[handle_id].table},
            )
        self._bound[handle_id] = binding

    def allocate(self) -> int:
        """Return the lowest unbound id, starting at 1. Does not reserve it."""
        handle_id = 1
        while handle_id in self._bound:
            handle_id += 1
        return handle_id

    def release(self, handle_id: int) -> None:
        self._bound.pop(handle_id, None)

    def binding(self, handle_id: int) -> IndexBinding | None:
        return self._bound.get(handle_id)

    def is_bound(self, handle_id: int) -> bool:
        return handle_id in self._bound

    def clear(self) -> None:
        self._bound.clear()

    def __contains__(self, handle_id: object) -> bool:
        return handle_id in self._bound

    def __len__(self) -> int:
        return len(self._bound)


class IndexClient:
    """Client for one HandlerSocket channel.

    Every call blocks until the server answers. One caller at a time:
    interleaving requests from several threads on the same client
    corrupts the response order.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 9998,
        *,
        timeout: float | None = None,
        channel: Any | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            host: Server host.
            port: HandlerSocket port (9998 read-only, 9999 read-write by default).
            timeout: Socket timeout in seconds, None to block indefinitely.
            channel: Pre-built channel object (send/read_line/connect/close).
                Overrides host, port and timeout.
        """
        self.channel = channel if channel is not None else Channel(host, port, timeout)
        self.handles = HandleRegistry()
        self._error: str | None = None

    @property
    def endpoint(self) -> str:
        return f"{getattr(self.channel, 'host', '?')}:{getattr(self.channel, 'port', '?')}"

    def connect(self) -> IndexClient:
        """Open the underlying channel.

        Raises:
            ChannelConnectionError: If the endpoint is unreachable.
        """
        self.channel.connect()
        return self

    def get_error(self) -> str | None:
        """Last error text reported by the server or the transport."""
        return self._error

    # ── Raw exchange ──────────────────────────────────────────

    def _exchange(self, requests: Sequence[bytes]) -> list[OpResult]:
        self._error = None
        try:
            self.channel.send(b"".join(requests))
            lines = [self.channel.read_line() for _ in requests]
        except ChannelConnectionError as e:
            self._error = e.message
            self.handles.clear()
            raise
        try:
            results = [parse_response(line) for line in lines]
        except ProtocolError as e:
            self._error = e.message
            raise
        for result in results:
            if not result.ok:
                self._error = result.error
                break
        return results

    # ── Handle setup ──────────────────────────────────────────

    def authenticate(self, secret: str) -> None:
        """Send plain-text auth before opening handles.

        Raises:
            ProtocolError: If the server rejects the secret.
        """
        (result,) = self._exchange([encode_auth(secret)])
        if not result.ok:
            raise ProtocolError(
                f"Authentication rejected: {result.error}",
                {"endpoint": self.endpoint, "status": result.status},
            )

    def open_index(
        self,
        handle_id: int,
        database: str,
        table: str,
        index_name: str = "PRIMARY",
        columns: Sequence[str] = ("value",),
    ) -> IndexBinding:
        """Bind handle_id to an index projecting columns in the given order.

        Raises:
            HandleOpenError: If the id is already bound or the server refuses.
            ChannelConnectionError: On transport failure.
        """
        binding = IndexBinding(database, table, index_name, tuple(columns))
        if handle_id in self.handles:
            raise HandleOpenError(
                "Handle id already bound on this channel",
                {"handle_id": handle_id, "table": table},
            )

        (result,) = self._exchange([
            encode_open_index(handle_id, database, table, index_name, binding.columns)
        ])
        if not result.ok:
            logger.error(
                "Server refused open_index",
                handle_id=handle_id,
                table=table,
                status=result.status,
                error=result.error,
            )
            raise HandleOpenError(
                f"Cannot open index: {result.error}",
                {"handle_id": handle_id, "table": table, "status": result.status},
            )

        self.handles.reserve(handle_id, binding)
        logger.info(
            "Opened index handle",
            handle_id=handle_id,
            database=database,
            table=table,
            index=index_name,
            columns=",".join(binding.columns),
            endpoint=self.endpoint,
        )
        return binding

    # ── Operations ────────────────────────────────────────────

    def _check_bound(self, op: Operation) -> None:
        if not getattr(self.channel, "connected", True):
            raise ChannelConnectionError(
                self._error or "Channel is not connected",
                {"handle_id": op.handle_id, "endpoint": self.endpoint},
            )
        if op.handle_id not in self.handles:
            raise ProtocolError(
                "Index handle is not open on this channel",
                {"handle_id": op.handle_id, "endpoint": self.endpoint},
            )

    def execute(self, op: Operation) -> OpResult:
        """Run one prepared Operation."""
        self._check_bound(op)
        (result,) = self._exchange([encode_operation(op)])
        return result

    def execute_single(
        self,
        handle_id: int,
        operator: Operator | str,
        key: Sequence[KeyLike | None],
        limit: int = 1,
        offset: int = 0,
        mod_op: ModOp | str | None = None,
        mod_args: Sequence[KeyLike | None] = (),
    ) -> OpResult:
        """Issue one find, find-and-modify or insert against a bound handle.

        Args:
            handle_id: Handle opened with open_index.
            operator: One of ``= >= <= > <``, or ``+`` to insert ``key`` as a row.
            key: Key tuple (or full row for inserts).
            limit: Maximum rows matched.
            offset: Rows skipped.
            mod_op: ``D`` to delete matches, ``U`` to update them with mod_args.
            mod_args: Replacement values for ``U``.

        Returns:
            OpResult with status 0 on success. Non-zero statuses are returned,
            not raised; get_error() holds the server's text.
        """
        op = Operation(
            handle_id=handle_id,
            operator=Operator(operator),
            key=_fields(key),
            limit=limit,
            offset=offset,
            mod_op=ModOp(mod_op) if mod_op is not None else None,
            mod_args=_fields(mod_args),
        )
        return self.execute(op)

    def execute_multi(self, operations: Iterable[Operation]) -> list[OpResult]:
        """Submit operations as one pipelined batch.

        The server applies them in order under a single lock acquisition
        and one result is returned per operation, in submission order.
        Nothing is rolled back if a later operation fails.
        """
        ops = list(operations)
        if not ops:
            return []
        for op in ops:
            self._check_bound(op)
        return self._exchange([encode_operation(op) for op in ops])

    # ── Conveniences ──────────────────────────────────────────

    def lookup(self, handle_id: int, key: KeyLike) -> LookupResult:
        """Equality lookup returning the first projected column."""
        return lookup_result(self.execute(Operation.find(handle_id, key)), handle_id)

    def insert(self, handle_id: int, values: Sequence[KeyLike | None]) -> OpResult:
        return self.execute(Operation.insert(handle_id, _fields(values)))

    def delete(self, handle_id: int, key: KeyLike) -> OpResult:
        return self.execute(Operation.delete(handle_id, key))

    def update(self, handle_id: int, key: KeyLike, values: Sequence[KeyLike | None]) -> OpResult:
        return self.execute(Operation.update(handle_id, key, _fields(values)))

    # ── Lifecycle ─────────────────────────────────────────────

    def close(self) -> None:
        self.handles.clear()
        self.channel.close()

    def __enter__(self) -> IndexClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<IndexClient {self.endpoint} handles={len(self.handles)}>"


def lookup_result(result: OpResult, handle_id: int) -> LookupResult:
    """Turn a find response into FOUND / NOT_FOUND / ERROR."""
    if not result.ok:
        return LookupResult.failed(
            result.error or f"status {result.status}",
            handle_id=handle_id,
            status=result.status,
        )
    if not result.rows:
        return LookupResult.not_found()
    return LookupResult.found(result.rows[0][0])


def _fields(values: Sequence[KeyLike | None]) -> tuple[Field, ...]:
    return tuple(None if v is None else to_bytes(v) for v in values)
