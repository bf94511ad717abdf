"""
tabledb - named, keyed tables on an ordered transactional key-value engine.

This package provides:
- Database: connection lifecycle manager with automatic reopen
- Table: put/delete/range/pagination/count over one key column
- Shared container pools with encoded keys, or one container per table
- MemoryEngine and SqliteEngine backends

Architecture:
    caller -> Table -> Database.ensure_open() -> engine transaction
           -> keyspace builds the KeyRange -> cursor / bulk call -> rows

Example:
    >>> from tabledb import Database, MemoryEngine
    >>> db = await Database.open("app", MemoryEngine())
    >>> events = await db.open_table("events", "id")
    >>> await events.put([{"id": i} for i in range(1, 11)])
    >>> await events.get_until_last(3)
    [{'id': 8}, {'id': 9}, {'id': 10}]

Invariants:
    - One live engine handle per Database; only the Database replaces it
    - Connectivity problems are masked below the Table API
    - Query and write failures are surfaced as typed errors, never retried

Version: 1.0.0
"""

__version__ = "1.0.0"

from .config import TableDbSettings
from .connection import ConnectionState, Database
from .engine import KeyRange, MemoryEngine, SqliteEngine, StorageEngine
from .errors import (
    BlockedError,
    ConnectivityError,
    DatabaseClosedError,
    InvalidTableNameError,
    KeyEncodingError,
    RangeQueryError,
    TableDbError,
    WriteBatchError,
)
from .keys import KeyCodec, decode, select_container
from .observability import setup_logging
from .table import Table

__all__ = [
    "BlockedError",
    "ConnectionState",
    "ConnectivityError",
    "Database",
    "DatabaseClosedError",
    "InvalidTableNameError",
    "KeyCodec",
    "KeyEncodingError",
    "KeyRange",
    "MemoryEngine",
    "RangeQueryError",
    "SqliteEngine",
    "StorageEngine",
    "Table",
    "TableDbError",
    "TableDbSettings",
    "WriteBatchError",
    "decode",
    "select_container",
    "setup_logging",
]
