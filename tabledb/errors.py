"""
Error types for tabledb.

This module defines all exception types raised to callers:
- TableDbError: Base exception
- ConnectivityError: The database could not be opened
- DatabaseClosedError: The database was closed explicitly
- BlockedError: Another handle prevents an upgrade or destroy
- WriteBatchError: Some rows of a put() failed
- RangeQueryError: The engine rejected a read, count or delete
- KeyEncodingError: A key cannot be encoded for a shared container
- InvalidTableNameError: A table name cannot be used

Invariants:
    - All errors inherit from TableDbError
    - Errors carry a machine-readable code and a details dict
    - Version conflicts are never raised; the connection manager absorbs them
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class TableDbError(Exception):
    """Base exception for all tabledb errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "TABLEDB_ERROR"
        self.details = details or {}


class ConnectivityError(TableDbError):
    """The database handle is not available.

    Raised when:
    - The first open() of a database fails
    - A schema change could not reopen the database
    - The database was deleted or downgraded by another handle
    """

    def __init__(self, message: str, database: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONNECTIVITY_ERROR",
            details={"database": database},
        )
        self.database = database


class DatabaseClosedError(ConnectivityError):
    """The database was closed with close() and will not reopen."""

    def __init__(self, database: str) -> None:
        super().__init__(f"Database is closed: {database}", database=database)
        self.code = "DATABASE_CLOSED"


class BlockedError(TableDbError):
    """Other open handles prevent an upgrade or destroy.

    Not retried: the other handles have to close first.
    """

    def __init__(self, message: str, database: str, operation: str) -> None:
        super().__init__(
            message,
            code="BLOCKED",
            details={"database": database, "operation": operation},
        )
        self.database = database
        self.operation = operation


class WriteBatchError(TableDbError):
    """One or more rows of a put() batch failed.

    Rows that did not fail are already written when this is raised.

    Attributes:
        failed: Number of rows that were not written
        total: Number of rows in the batch
    """

    def __init__(self, table: str, failed: int, total: int, reason: str = "") -> None:
        msg = f"Failed to put {failed} of {total} row(s) into table {table}"
        if reason:
            msg += f": {reason}"
        super().__init__(
            msg,
            code="WRITE_BATCH_ERROR",
            details={"table": table, "failed": failed, "total": total},
        )
        self.table = table
        self.failed = failed
        self.total = total


class RangeQueryError(TableDbError):
    """The engine rejected a read, count or delete.

    Attributes:
        operation: Table operation that failed (e.g. "get_until")
        table: Table name
    """

    def __init__(
        self,
        table: str,
        operation: str,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        info = {"table": table, "operation": operation}
        info.update(details or {})
        described = ", ".join(f"{k}: {v}" for k, v in (details or {}).items())
        msg = f"Failed to {operation} on table {table}"
        if described:
            msg += f" ({described})"
        msg += f": {reason}"
        super().__init__(msg, code="RANGE_QUERY_ERROR", details=info)
        self.table = table
        self.operation = operation


class KeyEncodingError(TableDbError, ValueError):
    """A key cannot be encoded into a shared container key."""

    def __init__(self, message: str, key: Any = None) -> None:
        super().__init__(message, code="KEY_ENCODING_ERROR", details={"key": repr(key)})
        self.key = key


class InvalidTableNameError(TableDbError, ValueError):
    """A table name is empty or contains the key separator."""

    def __init__(self, name: Any) -> None:
        super().__init__(
            f"Invalid table name: {name!r}",
            code="INVALID_TABLE_NAME",
            details={"name": repr(name)},
        )
        self.name = name
