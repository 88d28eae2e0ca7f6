"""
Cache driver storing entries in a MySQL table, accessed over HandlerSocket.

A simple primary key lookup in MySQL is fast, and HandlerSocket skips SQL
parsing altogether and completes as many requests as it can under one
table lock. The driver keeps two channels, following the HandlerSocket
design: a read channel whose handle projects ``value`` and a write
channel whose handle projects ``key,value``. SQL is only used for the
table DDL, for clear() and for key enumeration, which the protocol
cannot express.

HandlerSocket has no upsert, so store() pipelines a delete and an insert
as one batch. Both run under the same lock on the server, which avoids
the full-table locking of ``INSERT ... ON DUPLICATE KEY UPDATE`` on the
ordinary write path.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Sequence

from hscache.client import IndexClient, lookup_result
from hscache.connection import ConnectionAccessor, as_accessor, quote_identifier, run_statement
from hscache.exceptions import (
    DriverStateError,
    HSCacheError,
    ProtocolError,
    SchemaError,
    StoreIncompleteError,
    UnsupportedOperation,
)
from hscache.logging import get_logger, log_context
from hscache.types import (
    DriverState,
    KeyLike,
    LookupStatus,
    Operation,
    OpResult,
    UpsertMode,
    to_bytes,
)

if TYPE_CHECKING:
    from hscache.config import Settings

logger = get_logger(__name__)

READ_COLUMNS = ("value",)
WRITE_COLUMNS = ("key", "value")
PRIMARY_INDEX = "PRIMARY"
MAX_KEY_LENGTH = 600


def table_name(namespace: str, prefix: str | None = "chi_") -> str:
    """Build the cache table name; an empty prefix uses the namespace as-is."""
    return f"{prefix or ''}{namespace}"


@dataclass(frozen=True)
class UpsertCommand:
    """Delete-then-insert pair that stands in for an upsert.

    The delete may match nothing. If the delete succeeds but the insert
    fails, the old row is gone and the new one is missing; this is raised
    as StoreIncompleteError so the caller can retry the insert alone.
    """

    handle_id: int
    key: bytes
    value: bytes

    def operations(self) -> list[Operation]:
        return [
            Operation.delete(self.handle_id, self.key),
            Operation.insert(self.handle_id, (self.key, self.value)),
        ]

    def check(self, results: Sequence[OpResult]) -> None:
        """Raise if either step failed."""
        if len(results) != 2:
            raise ProtocolError(
                "Upsert batch returned wrong number of results",
                {"key": self.key, "results": len(results)},
            )
        deleted, inserted = results
        if not deleted.ok:
            raise ProtocolError(
                f"Delete step of store failed: {deleted.error}",
                {"key": self.key, "status": deleted.status},
            )
        if not inserted.ok:
            raise StoreIncompleteError(
                f"Insert step of store failed after delete: {inserted.error}",
                {"key": self.key, "status": inserted.status},
            )


class CacheDriver:
    """Key/value cache over one HandlerSocket-accessed table.

    Lifecycle: UNINITIALIZED -> BOOTSTRAPPING -> READY, then CLOSED after
    close(). Bootstrap runs in the constructor; any failure there is raised
    and the driver never becomes READY.

    The driver is not thread-safe: callers sharing an instance must
    serialize access themselves.
    """

    def __init__(
        self,
        connection: Any,
        namespace: str,
        *,
        host: str = "localhost",
        read_port: int = 9998,
        write_port: int = 9999,
        read_index_id: int | None = 1,
        write_index_id: int | None = 1,
        table_prefix: str | None = "chi_",
        auth_key: str | None = None,
        timeout: float | None = None,
        upsert_mode: UpsertMode | str = UpsertMode.BATCH,
        read_client: IndexClient | None = None,
        write_client: IndexClient | None = None,
        owns_connection: bool = False,
    ) -> None:
        """Create the driver and bootstrap it.

        Args:
            connection: DB-API connection, pool with .connection(), or a
                zero-argument factory. Used for DDL, clear and get_keys.
            namespace: Cache namespace, appended to table_prefix.
            host: HandlerSocket host.
            read_port: Read-only HandlerSocket port.
            write_port: Read-write HandlerSocket port.
            read_index_id: Handle id on the read channel. None picks the
                lowest free id on that client.
            write_index_id: Handle id on the write channel, same rules.
            table_prefix: Prefix for the table name. Empty or None uses the
                namespace as the literal table name.
            auth_key: Plain-text HandlerSocket secret, if the server wants one.
            timeout: Socket timeout in seconds; None blocks indefinitely.
            upsert_mode: BATCH (delete+insert over HandlerSocket) or SQL.
            read_client: Pre-built client for the read channel.
            write_client: Pre-built client for the write channel.
            owns_connection: Call the accessor's close(), if it has one, when
                the driver closes or fails to bootstrap.

        Raises:
            ChannelConnectionError: If a channel cannot be established.
            HandleOpenError: If the server refuses a handle.
            SchemaError: If the database name or DDL fails.
        """
        if not namespace:
            raise ValueError("namespace is required")

        self.state = DriverState.UNINITIALIZED
        self.namespace = namespace
        self.table_prefix = table_prefix
        self.table = table_name(namespace, table_prefix)
        self.host = host
        self.read_port = read_port
        self.write_port = write_port
        self.auth_key = auth_key
        self.upsert_mode = UpsertMode(upsert_mode)
        self.database: str | None = None

        self._accessor: ConnectionAccessor = as_accessor(connection)
        self.owns_connection = owns_connection
        self.read_client = read_client or IndexClient(host, read_port, timeout=timeout)
        self.write_client = write_client or IndexClient(host, write_port, timeout=timeout)
        self.read_index_id = (
            read_index_id if read_index_id is not None else self.read_client.handles.allocate()
        )
        self.write_index_id = (
            write_index_id if write_index_id is not None else self.write_client.handles.allocate()
        )

        self._bootstrap()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        connection: Any | None = None,
        namespace: str | None = None,
        **kwargs: Any,
    ) -> CacheDriver:
        """Build a driver from Settings.

        If connection is omitted, a PyMySQL accessor is built from MYSQL_URL
        and the driver owns it: close() closes its connection.
        """
        if connection is None:
            connection = settings.connection_accessor()
            kwargs.setdefault("owns_connection", True)
        return cls(
            connection,
            namespace or settings.CACHE_NAMESPACE,
            host=settings.HS_HOST,
            read_port=settings.HS_READ_PORT,
            write_port=settings.HS_WRITE_PORT,
            read_index_id=settings.HS_READ_INDEX_ID,
            write_index_id=settings.HS_WRITE_INDEX_ID,
            table_prefix=settings.CACHE_TABLE_PREFIX,
            auth_key=settings.HS_AUTH_KEY,
            timeout=settings.HS_TIMEOUT,
            upsert_mode=settings.CACHE_UPSERT_MODE,
            **kwargs,
        )

    # ── Bootstrap ─────────────────────────────────────────────

    def _bootstrap(self) -> None:
        self.state = DriverState.BOOTSTRAPPING
        with log_context(namespace=self.namespace):
            try:
                self.database = self._database_name()
                self._create_table()
                self._open(self.read_client, self.read_index_id, READ_COLUMNS, "read")
                self._open(self.write_client, self.write_index_id, WRITE_COLUMNS, "write")
            except HSCacheError:
                self.read_client.close()
                self.write_client.close()
                self._release_connection()
                self.state = DriverState.UNINITIALIZED
                raise
        self.state = DriverState.READY
        logger.info(
            "Cache driver ready",
            table=self.table,
            database=self.database,
            host=self.host,
            read_port=self.read_port,
            write_port=self.write_port,
        )

    def _database_name(self) -> str:
        rows = run_statement(
            self._accessor,
            "SELECT DATABASE() AS dbname",
            fetch=True,
            label="database name",
        )
        if not rows or not rows[0] or not rows[0][0]:
            raise SchemaError("Could not determine the name of the database")
        name = rows[0][0]
        return name.decode("utf-8") if isinstance(name, bytes) else str(name)

    def _create_table(self) -> None:
        run_statement(
            self._accessor,
            f"CREATE TABLE IF NOT EXISTS {quote_identifier(self.table)} "
            f"( `key` VARCHAR( {MAX_KEY_LENGTH} ), `value` TEXT, PRIMARY KEY ( `key` ) )",
            commit=True,
            label="create table",
            table=self.table,
        )

    def _open(
        self, client: IndexClient, handle_id: int, columns: Sequence[str], role: str
    ) -> None:
        with log_context(channel=role):
            client.connect()
            if self.auth_key:
                client.authenticate(self.auth_key)
            client.open_index(handle_id, self.database, self.table, PRIMARY_INDEX, columns)

    def _require_ready(self) -> None:
        if self.state is not DriverState.READY:
            raise DriverStateError(
                "Cache driver is not ready",
                {"state": self.state.value, "table": self.table},
            )

    # ── Verbs ─────────────────────────────────────────────────

    def fetch(self, key: KeyLike) -> bytes | None:
        """Return the stored value, or None if the key is absent.

        Raises:
            ProtocolError: If the server reports an error.
        """
        self._require_ready()
        result = self.read_client.lookup(self.read_index_id, key)
        if result.status is LookupStatus.ERROR:
            raise ProtocolError(f"Fetch failed: {result.error}", {"key": to_bytes(key), **result.context})
        logger.debug("fetch", key=key, hit=result.is_found)
        return result.value if result.is_found else None

    def fetch_many(self, keys: Iterable[KeyLike]) -> dict[bytes, bytes | None]:
        """Fetch several keys in one read batch."""
        self._require_ready()
        wanted = [to_bytes(k) for k in keys]
        if not wanted:
            return {}
        results = self.read_client.execute_multi(
            Operation.find(self.read_index_id, k) for k in wanted
        )
        out: dict[bytes, bytes | None] = {}
        for key, result in zip(wanted, results):
            tagged = lookup_result(result, self.read_index_id)
            if tagged.status is LookupStatus.ERROR:
                raise ProtocolError(f"Fetch failed: {tagged.error}", {"key": key, **tagged.context})
            out[key] = tagged.value if tagged.is_found else None
        return out

    def store(self, key: KeyLike, value: KeyLike) -> None:
        """Write value under key, replacing any previous value.

        Raises:
            ProtocolError: If the delete step fails.
            StoreIncompleteError: If the delete succeeded but the insert failed.
            SchemaError: In SQL upsert mode, if the statement fails.
        """
        self._require_ready()
        key_b, value_b = _checked_key(key), to_bytes(value)
        if self.upsert_mode is UpsertMode.SQL:
            self._store_sql(key_b, value_b)
            return

        command = UpsertCommand(self.write_index_id, key_b, value_b)
        results = self.write_client.execute_multi(command.operations())
        try:
            command.check(results)
        except ProtocolError as e:
            logger.warning("store failed", key=key_b, error=e.message)
            raise
        logger.debug("store", key=key_b, size=len(value_b))

    def store_many(self, entries: Mapping[KeyLike, KeyLike]) -> None:
        """Store several entries in one write batch of delete+insert pairs.

        Pairs are checked in order; the first failure is raised and later
        pairs may already have been applied.
        """
        self._require_ready()
        if self.upsert_mode is UpsertMode.SQL:
            for key, value in entries.items():
                self._store_sql(_checked_key(key), to_bytes(value))
            return

        commands = [
            UpsertCommand(self.write_index_id, _checked_key(k), to_bytes(v))
            for k, v in entries.items()
        ]
        if not commands:
            return
        ops = [op for command in commands for op in command.operations()]
        results = self.write_client.execute_multi(ops)
        for i, command in enumerate(commands):
            command.check(results[2 * i: 2 * i + 2])

    def _store_sql(self, key: bytes, value: bytes) -> None:
        run_statement(
            self._accessor,
            f"INSERT INTO {quote_identifier(self.table)} ( `key`, `value` ) VALUES ( %s, %s ) "
            "ON DUPLICATE KEY UPDATE `value`=VALUES(`value`)",
            (key, value),
            commit=True,
            label="store",
            table=self.table,
        )

    def remove(self, key: KeyLike) -> None:
        """Delete key. Removing an absent key is not an error.

        Raises:
            ProtocolError: If the server reports an error.
        """
        self._require_ready()
        result = self.write_client.delete(self.write_index_id, key)
        if not result.ok:
            raise ProtocolError(
                f"Remove failed: {result.error}",
                {"key": to_bytes(key), "status": result.status},
            )
        logger.debug("remove", key=key, affected=result.affected)

    def clear(self) -> None:
        """Delete every entry in the table.

        Raises:
            SchemaError: If the DELETE statement fails.
        """
        self._require_ready()
        run_statement(
            self._accessor,
            f"DELETE FROM {quote_identifier(self.table)}",
            commit=True,
            label="clear",
            table=self.table,
        )
        logger.info("Cleared cache table", table=self.table)

    def get_keys(self) -> list[bytes]:
        """Return every distinct key in the table.

        Raises:
            SchemaError: If the SELECT fails.
        """
        self._require_ready()
        rows = run_statement(
            self._accessor,
            f"SELECT DISTINCT `key` FROM {quote_identifier(self.table)}",
            fetch=True,
            label="get keys",
            table=self.table,
        )
        return [to_bytes(row[0]) for row in rows]

    def get_namespaces(self) -> list[str]:
        raise UnsupportedOperation("get_namespaces is not supported", {"table": self.table})

    # ── Lifecycle ─────────────────────────────────────────────

    def close(self) -> None:
        """Close both channels, and the SQL connection if the driver owns it."""
        self.read_client.close()
        self.write_client.close()
        self._release_connection()
        self.state = DriverState.CLOSED

    def _release_connection(self) -> None:
        if self.owns_connection:
            close = getattr(self._accessor, "close", None)
            if close is not None:
                close()

    def __enter__(self) -> CacheDriver:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<CacheDriver {self.table} {self.state.value}>"


def _checked_key(key: KeyLike) -> bytes:
    key_b = to_bytes(key)
    if len(key_b) > MAX_KEY_LENGTH:
        raise ValueError(f"key longer than {MAX_KEY_LENGTH} bytes")
    return key_b
