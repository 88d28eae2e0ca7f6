"""
Custom exception hierarchy for the HandlerSocket cache driver.

All exceptions inherit from HSCacheError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class HSCacheError(Exception):
    """Base exception for all hscache errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(HSCacheError):
    """Raised when configuration is invalid or missing.

    Examples:
        - A connection source that is neither callable, a connection, nor a pool
        - A MySQL URL without a database name
    """

    pass


class ChannelConnectionError(HSCacheError, ConnectionError):
    """Raised when a HandlerSocket channel cannot be established or breaks.

    Context should include:
        - host: The endpoint host
        - port: The endpoint port
    """

    pass


class HandleOpenError(HSCacheError):
    """Raised when an index handle cannot be opened.

    Covers both a client-side reopen of an already bound handle id and
    a server rejection (unknown database, table, index or column).

    Context should include:
        - handle_id: The numeric handle
        - table: The table being opened
        - status: Server status code, if the server answered
    """

    pass


class ProtocolError(HSCacheError):
    """Raised when an operation returns a non-zero status or a malformed reply.

    Context should include:
        - handle_id: The handle the operation ran against
        - status: The status code returned
    """

    pass


class StoreIncompleteError(ProtocolError):
    """Raised when an upsert deleted the old row but the insert failed.

    The entry is left absent. Callers may retry the insert alone.

    Context should include:
        - key: The key being stored
        - status: Status code of the failed insert
    """

    pass


class SchemaError(HSCacheError):
    """Raised when a statement on the relational connection fails.

    Context should include:
        - table: The cache table
        - statement: Short name of the statement (create, clear, keys, ...)
    """

    pass


class UnsupportedOperation(HSCacheError, NotImplementedError):
    """Raised for cache operations this driver cannot provide."""

    pass


class DriverStateError(HSCacheError):
    """Raised when a verb is used before bootstrap finished or after close."""

    pass
