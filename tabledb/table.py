"""
Logical tables and the range/pagination engine.

A Table is a named set of rows keyed by one column. It holds no engine
resources: every operation asks its Database for the live handle and runs
inside a fresh transaction on the table's container. Range boundaries come
from the table's keyspace, so the same algorithms serve tables that share
a pooled container (encoded keys between sentinels) and tables that own
their container (raw keys, unbounded whole-table range).

Windowed reads:
    get_since / get_between / get_since_first
        one bulk read over the range, capped at limit
    get_until / get_until_last
        the last `limit` rows at or below the bound, ascending:
        1. open a reverse cursor on the window and advance it limit - 1
           steps to find the window's lower edge
        2. bulk-read [edge, upper bound] (or the whole window if the
           cursor ran off the start)

Invariants:
    - A table binds to its container once and never rebinds
    - Results are always in ascending key order
    - put() never hides a failed row: any failure raises WriteBatchError
      after the remaining rows were committed
    - Query operations are not retried; only the connection is
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from .engine.base import (
    Direction,
    EngineContainer,
    EngineDataError,
    EngineError,
    KeyRange,
    TransactionMode,
)
from .errors import KeyEncodingError, RangeQueryError, WriteBatchError
from .keys import Keyspace, validate_table_name

if TYPE_CHECKING:
    from .connection import Database

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
T = TypeVar("T")


def _check_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
        raise ValueError(f"limit must be a non-negative integer, got {limit!r}")
    return limit


def _lower_edge(window: Optional[KeyRange], key: Any) -> KeyRange:
    """window with its lower bound moved up to key (inclusive)."""
    if window is None:
        return KeyRange.lower_bound(key)
    return window.with_lower(key)


class Table:
    """A logical table inside a Database.

    Obtain tables from Database.open_table().

    Attributes:
        name: Table name
        key_column: Row field holding the key
    """

    def __init__(self, name: str, key_column: str, database: Database) -> None:
        self.name = validate_table_name(name)
        self.key_column = key_column
        self._db = database
        self._container: Optional[str] = None
        self._keyspace: Optional[Keyspace] = None

    def __repr__(self) -> str:
        return f"Table(name={self.name!r}, key_column={self.key_column!r}, container={self._container!r})"

    @property
    def is_bound(self) -> bool:
        return self._keyspace is not None

    @property
    def container(self) -> Optional[str]:
        """Physical container, once bound."""
        return self._container

    def _bind(self) -> Tuple[str, Keyspace]:
        if self._keyspace is None or self._container is None:
            self._container, self._keyspace = self._db._layout_for(self.name)
            logger.debug(
                "Table bound",
                extra={"table": self.name, "container": self._container},
            )
        return self._container, self._keyspace

    async def _run(
        self,
        mode: TransactionMode,
        operation: str,
        body: Callable[[EngineContainer], Awaitable[T]],
        details: Optional[Dict[str, Any]] = None,
    ) -> T:
        container, _ = self._bind()
        handle = await self._db.ensure_open()
        try:
            async with handle.transaction(container, mode, self._db.durability) as tx:
                return await body(tx.container(container))
        except EngineError as e:
            logger.debug(
                f"Table operation failed: {e}",
                extra={"table": self.name, "operation": operation},
            )
            raise RangeQueryError(self.name, operation, str(e), details) from e

    # Writes

    async def put(self, rows: Iterable[Row]) -> None:
        """Write rows under their keys in one transaction.

        Raises:
            WriteBatchError: If any row failed; the other rows are written
        """
        rows = list(rows)
        if not rows:
            return
        container, keyspace = self._bind()
        handle = await self._db.ensure_open()
        failed = 0
        try:
            async with handle.transaction(
                container, TransactionMode.READWRITE, self._db.durability
            ) as tx:
                store = tx.container(container)
                for row in rows:
                    try:
                        key = keyspace.storage_key(row[self.key_column])
                        await store.put(row, key)
                    except (KeyError, TypeError, KeyEncodingError, EngineDataError) as e:
                        failed += 1
                        logger.debug(
                            f"Row rejected: {e}",
                            extra={"table": self.name, "key_column": self.key_column},
                        )
        except EngineError as e:
            raise WriteBatchError(self.name, len(rows), len(rows), str(e)) from e
        if failed:
            raise WriteBatchError(self.name, failed, len(rows))

    async def clear(self) -> None:
        """Delete every row of the table, keeping its container."""
        _, keyspace = self._bind()
        whole = keyspace.whole()

        async def body(store: EngineContainer) -> None:
            if whole is None:
                await store.clear()
            else:
                await store.delete(whole)

        await self._run(TransactionMode.READWRITE, "clear", body)

    async def delete_since(self, start_key: Any) -> None:
        """Delete rows with key >= start_key."""
        _, keyspace = self._bind()
        await self._delete_range("delete_since", keyspace.since(start_key))

    async def delete_until(self, end_key: Any) -> None:
        """Delete rows with key <= end_key."""
        _, keyspace = self._bind()
        await self._delete_range("delete_until", keyspace.until(end_key))

    async def delete_between(self, start_key: Any, end_key: Any) -> None:
        """Delete rows with start_key <= key <= end_key."""
        _, keyspace = self._bind()
        await self._delete_range("delete_between", keyspace.between(start_key, end_key))

    async def _delete_range(self, operation: str, key_range: KeyRange) -> None:
        async def body(store: EngineContainer) -> None:
            await store.delete(key_range)

        await self._run(TransactionMode.READWRITE, operation, body, {"range": str(key_range)})

    # Reads

    async def get_all(self) -> List[Row]:
        """Every row, ascending."""
        _, keyspace = self._bind()
        return await self._get_range("get_all", keyspace.whole(), None)

    async def get_since(self, start_key: Any, limit: int) -> List[Row]:
        """Up to limit rows with key >= start_key, ascending."""
        _check_limit(limit)
        _, keyspace = self._bind()
        return await self._get_range("get_since", keyspace.since(start_key), limit)

    async def get_since_first(self, limit: int) -> List[Row]:
        """The first limit rows of the table."""
        _check_limit(limit)
        _, keyspace = self._bind()
        return await self._get_range("get_since_first", keyspace.whole(), limit)

    async def get_between(self, start_key: Any, end_key: Any, limit: int) -> List[Row]:
        """Up to limit rows with start_key <= key <= end_key, ascending."""
        _check_limit(limit)
        _, keyspace = self._bind()
        return await self._get_range(
            "get_between", keyspace.between(start_key, end_key), limit
        )

    async def get_until(self, end_key: Any, limit: int) -> List[Row]:
        """The last limit rows with key <= end_key, ascending."""
        _check_limit(limit)
        _, keyspace = self._bind()
        return await self._get_until("get_until", keyspace.until(end_key), limit)

    async def get_until_last(self, limit: int) -> List[Row]:
        """The last limit rows of the table, ascending."""
        _check_limit(limit)
        _, keyspace = self._bind()
        return await self._get_until("get_until_last", keyspace.whole(), limit)

    async def get_first_row(self) -> Optional[Row]:
        return await self._get_edge_row("get_first_row", Direction.NEXT)

    async def get_last_row(self) -> Optional[Row]:
        return await self._get_edge_row("get_last_row", Direction.PREV)

    async def count(self) -> int:
        _, keyspace = self._bind()
        whole = keyspace.whole()

        async def body(store: EngineContainer) -> int:
            return await store.count(whole)

        return await self._run(TransactionMode.READONLY, "count", body)

    async def _get_range(
        self,
        operation: str,
        key_range: Optional[KeyRange],
        limit: Optional[int],
    ) -> List[Row]:
        if limit == 0:
            return []

        async def body(store: EngineContainer) -> List[Row]:
            return await store.get_all(key_range, limit)

        return await self._run(
            TransactionMode.READONLY,
            operation,
            body,
            {"range": str(key_range), "limit": limit},
        )

    async def _get_until(
        self,
        operation: str,
        window: Optional[KeyRange],
        limit: int,
    ) -> List[Row]:
        if limit == 0:
            return []

        async def body(store: EngineContainer) -> List[Row]:
            cursor = await store.open_cursor(window, Direction.PREV)
            if cursor is None:
                return []
            found_edge = True
            if limit > 1:
                found_edge = await cursor.advance(limit - 1)
            # Running off the start means the window holds fewer than limit rows.
            key_range = _lower_edge(window, cursor.key) if found_edge else window
            return await store.get_all(key_range, limit)

        return await self._run(
            TransactionMode.READONLY,
            operation,
            body,
            {"range": str(window), "limit": limit, "direction": Direction.PREV.value},
        )

    async def _get_edge_row(self, operation: str, direction: Direction) -> Optional[Row]:
        _, keyspace = self._bind()
        whole = keyspace.whole()

        async def body(store: EngineContainer) -> Optional[Row]:
            cursor = await store.open_cursor(whole, direction)
            return cursor.value if cursor is not None else None

        return await self._run(
            TransactionMode.READONLY,
            operation,
            body,
            {"range": str(whole), "direction": direction.value},
        )
