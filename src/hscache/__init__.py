"""
hscache - key/value cache storage in MySQL over HandlerSocket.

Entries live in a ``(key VARCHAR(600) PRIMARY KEY, value TEXT)`` table and
are read and written through the HandlerSocket plugin's primary key path
instead of SQL.
"""

from hscache.client import HandleRegistry, IndexClient
from hscache.driver import CacheDriver, UpsertCommand
from hscache.exceptions import (
    ChannelConnectionError,
    ConfigurationError,
    DriverStateError,
    HandleOpenError,
    HSCacheError,
    ProtocolError,
    SchemaError,
    StoreIncompleteError,
    UnsupportedOperation,
)

__version__ = "0.99.0"

__all__ = [
    "CacheDriver",
    "ChannelConnectionError",
    "ConfigurationError",
    "DriverStateError",
    "HSCacheError",
    "HandleOpenError",
    "HandleRegistry",
    "IndexClient",
    "ProtocolError",
    "SchemaError",
    "StoreIncompleteError",
    "UnsupportedOperation",
    "UpsertCommand",
    "__version__",
]
