"""
On-disk storage engine built on SQLite.

Each database is one SQLite file. Containers are WITHOUT ROWID tables
holding (key, value) pairs with JSON-encoded values, and the schema
version is kept in PRAGMA user_version so another process opening the
same file sees version bumps.

Invariants:
    - One SQLite file per database name
    - The key column has no declared type, so SQLite's storage-class
      ordering (INTEGER/REAL before TEXT) matches sort_key()
    - Container names map to table names through the catalogue table
    - Transactions on one handle are serialised; SQLite has a single
      transaction per connection

How to change safely:
    - Never change the catalogue table layout without a migration
    - Values must stay JSON-serialisable; non-serialisable rows are
      rejected with EngineDataError
    - Integer keys outside SQLite's signed 64-bit range are rejected
      with EngineDataError, in writes and in range bounds alike
    - Test ordering of mixed int/str keys after any query change
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import zlib
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple, Union

from .base import (
    BaseHandle,
    Direction,
    EngineClosedError,
    EngineDataError,
    EngineError,
    EngineEvent,
    EngineEventKind,
    EngineNotFoundError,
    EngineUnavailableError,
    EngineVersionError,
    HandleRegistry,
    Key,
    KeyRange,
    TransactionMode,
    UpgradeCallback,
    UpgradeContext,
    normalize_containers,
    validate_key,
)

logger = logging.getLogger(__name__)

CATALOGUE_TABLE = "_tabledb_containers"

SYNCHRONOUS_BY_DURABILITY = {
    "relaxed": "NORMAL",
    "default": "NORMAL",
    "strict": "FULL",
}


def _table_for(container: str) -> str:
    """SQLite table name for a container (hex keeps it a plain identifier)."""
    return "c_" + container.encode("utf-8").hex()


def _where(
    key_range: Optional[KeyRange],
    after: Optional[Tuple[str, Key]] = None,
) -> Tuple[str, List[Any]]:
    """WHERE clause for a key range, optionally narrowed by one comparison."""
    clauses: List[str] = []
    params: List[Any] = []
    if key_range is not None:
        if key_range.lower is not None:
            clauses.append("key > ?" if key_range.lower_open else "key >= ?")
            params.append(key_range.lower)
        if key_range.upper is not None:
            clauses.append("key < ?" if key_range.upper_open else "key <= ?")
            params.append(key_range.upper)
    if after is not None:
        op, key = after
        clauses.append(f"key {op} ?")
        params.append(key)
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


class SqliteCursor:
    """Cursor that re-queries from its current key on each advance."""

    def __init__(
        self,
        store: SqliteContainer,
        key_range: Optional[KeyRange],
        direction: Direction,
        key: Key,
        raw_value: str,
    ) -> None:
        self._store = store
        self._range = key_range
        self._direction = direction
        self._key = key
        self._raw_value = raw_value

    @property
    def key(self) -> Key:
        return self._key

    @property
    def value(self) -> Any:
        return json.loads(self._raw_value)

    async def advance(self, count: int) -> bool:
        if count <= 0:
            raise EngineDataError(f"advance() count must be positive, got {count}")
        forward = self._direction is Direction.NEXT
        where, params = _where(self._range, (">" if forward else "<", self._key))
        order = "ASC" if forward else "DESC"
        row = await self._store._fetchone(
            f"SELECT key, value FROM {self._store.table}{where} "
            f"ORDER BY key {order} LIMIT 1 OFFSET ?",
            params + [count - 1],
        )
        if row is None:
            return False
        self._key, self._raw_value = row
        return True


class SqliteContainer:
    """Container operations inside one SQLite transaction."""

    def __init__(self, tx: SqliteTransaction, name: str, table: str) -> None:
        self._tx = tx
        self.name = name
        self.table = table

    async def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        await asyncio.sleep(0)
        return self._tx._handle._execute(sql, params)

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[Tuple[Any, ...]]:
        cur = await self._execute(sql, params)
        return cur.fetchone()

    def _require_write(self) -> None:
        if self._tx.mode is not TransactionMode.READWRITE:
            raise EngineError(f"Transaction on {self.name} is read-only")

    async def put(self, value: Any, key: Key) -> None:
        self._require_write()
        validate_key(key)
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise EngineDataError(f"Value for key {key!r} is not JSON serialisable: {e}") from e
        await self._execute(
            f"INSERT OR REPLACE INTO {self.table} (key, value) VALUES (?, ?)",
            (key, encoded),
        )

    async def delete(self, key_range: KeyRange) -> None:
        self._require_write()
        where, params = _where(key_range)
        await self._execute(f"DELETE FROM {self.table}{where}", params)

    async def clear(self) -> None:
        self._require_write()
        await self._execute(f"DELETE FROM {self.table}")

    async def count(self, key_range: Optional[KeyRange] = None) -> int:
        where, params = _where(key_range)
        row = await self._fetchone(f"SELECT COUNT(*) FROM {self.table}{where}", params)
        return row[0] if row else 0

    async def get_all(
        self,
        key_range: Optional[KeyRange] = None,
        limit: Optional[int] = None,
    ) -> List[Any]:
        where, params = _where(key_range)
        cur = await self._execute(
            f"SELECT value FROM {self.table}{where} ORDER BY key ASC LIMIT ?",
            params + [-1 if limit is None else limit],
        )
        return [json.loads(raw) for (raw,) in cur.fetchall()]

    async def open_cursor(
        self,
        key_range: Optional[KeyRange] = None,
        direction: Direction = Direction.NEXT,
    ) -> Optional[SqliteCursor]:
        where, params = _where(key_range)
        order = "ASC" if direction is Direction.NEXT else "DESC"
        row = await self._fetchone(
            f"SELECT key, value FROM {self.table}{where} ORDER BY key {order} LIMIT 1",
            params,
        )
        if row is None:
            return None
        return SqliteCursor(self, key_range, direction, row[0], row[1])


class SqliteTransaction:
    """An open SQLite transaction scoped to some containers."""

    def __init__(self, handle: SqliteHandle, names: List[str], mode: TransactionMode) -> None:
        self.mode = mode
        self._handle = handle
        self._containers = {
            name: SqliteContainer(self, name, handle._tables[name]) for name in names
        }

    def container(self, name: str) -> SqliteContainer:
        if name not in self._containers:
            raise EngineNotFoundError(f"Container {name} is not in the transaction scope")
        return self._containers[name]


class SqliteHandle(BaseHandle):
    """Open connection to one SQLite database file."""

    def __init__(
        self,
        engine: SqliteEngine,
        name: str,
        conn: sqlite3.Connection,
        version: int,
    ) -> None:
        super().__init__(name, version)
        self._engine = engine
        self._conn = conn
        self._lock = asyncio.Lock()
        self._tables: Dict[str, str] = dict(
            conn.execute(f"SELECT name, tbl FROM {CATALOGUE_TABLE}").fetchall()
        )

    @property
    def container_names(self) -> Set[str]:
        return set(self._tables)

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        self._check_open()
        try:
            return self._conn.execute(sql, tuple(params))
        except (sqlite3.IntegrityError, sqlite3.InterfaceError, OverflowError) as e:
            raise EngineDataError(str(e)) from e
        except sqlite3.ProgrammingError as e:
            raise EngineClosedError(f"SQLite connection unusable for {self._name}: {e}") from e
        except sqlite3.DatabaseError as e:
            logger.warning(
                "SQLite request failed",
                extra={"database": self._name, "error": str(e)},
            )
            self.emit(EngineEvent(EngineEventKind.ERROR, self._version, reason=str(e)))
            raise EngineError(f"SQLite request failed on {self._name}: {e}") from e

    def _check_schema_version(self) -> None:
        (stored,) = self._execute("PRAGMA user_version").fetchone()
        if stored > self._version:
            self.emit(EngineEvent(EngineEventKind.VERSION_CHANGE, self._version, stored))
            raise EngineClosedError(
                f"Database {self._name} was upgraded to version {stored} by another connection"
            )

    @asynccontextmanager
    async def transaction(
        self,
        containers: Union[str, Iterable[str]],
        mode: TransactionMode = TransactionMode.READONLY,
        durability: str = "default",
    ) -> AsyncIterator[SqliteTransaction]:
        self._check_open()
        names = normalize_containers(containers)
        for name in names:
            if name not in self._tables:
                raise EngineNotFoundError(f"No container {name} in database {self._name}")

        async with self._lock:
            self._check_open()
            self._check_schema_version()
            synchronous = SYNCHRONOUS_BY_DURABILITY.get(durability, "NORMAL")
            self._execute(f"PRAGMA synchronous = {synchronous}")
            self._execute("BEGIN IMMEDIATE" if mode is TransactionMode.READWRITE else "BEGIN")
            tx = SqliteTransaction(self, names, mode)
            try:
                yield tx
            except BaseException:
                if not self._closed and self._conn.in_transaction:
                    self._conn.rollback()
                raise
            self._execute("COMMIT")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._engine._registry.unregister(self)
        self._conn.close()
        logger.debug("SQLite handle closed", extra={"database": self._name})


class SqliteEngine:
    """SQLite implementation of StorageEngine.

    Attributes:
        data_dir: Directory holding one file per database
        busy_timeout_ms: SQLite busy timeout

    Example:
        >>> engine = SqliteEngine("/var/lib/tabledb")
        >>> db = await Database.open("app", engine)
    """

    def __init__(self, data_dir: str, busy_timeout_ms: int = 5000) -> None:
        self.data_dir = Path(data_dir)
        self.busy_timeout_ms = busy_timeout_ms
        self._registry = HandleRegistry()

    def _get_db_path(self, name: str) -> Path:
        """Database file path; unsafe names get a checksum suffix."""
        safe = "".join(c for c in name if c.isalnum() or c in "-_")
        if safe != name or not safe:
            safe = f"{safe}-{zlib.crc32(name.encode('utf-8')):08x}"
        return self.data_dir / f"{safe}.sqlite3"

    def _connect(self, path: Path) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # explicit transactions only
        )
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {CATALOGUE_TABLE} ("
            "name TEXT PRIMARY KEY, tbl TEXT NOT NULL UNIQUE)"
        )
        return conn

    async def open(
        self,
        name: str,
        version: Optional[int] = None,
        on_upgrade: Optional[UpgradeCallback] = None,
    ) -> SqliteHandle:
        if version is not None and version < 1:
            raise EngineVersionError(f"Version must be >= 1, got {version}")
        path = self._get_db_path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect(path)
        except (OSError, sqlite3.Error) as e:
            raise EngineUnavailableError(f"Cannot open SQLite database {path}: {e}") from e

        try:
            (current,) = conn.execute("PRAGMA user_version").fetchone()
            target = version if version is not None else max(current, 1)
            if target < current:
                raise EngineVersionError(
                    f"Requested version {target} is less than stored version {current} for {name}"
                )
            if target > current:
                await self._registry.request_exclusive(name, target)
                self._upgrade(conn, name, current, target, on_upgrade)
            handle = SqliteHandle(self, name, conn, target)
        except sqlite3.Error as e:
            conn.close()
            raise EngineUnavailableError(f"Cannot read SQLite database {path}: {e}") from e
        except BaseException:
            conn.close()
            raise

        self._registry.register(handle)
        return handle

    def _upgrade(
        self,
        conn: sqlite3.Connection,
        name: str,
        current: int,
        target: int,
        on_upgrade: Optional[UpgradeCallback],
    ) -> None:
        def container_names() -> Set[str]:
            return {row[0] for row in conn.execute(f"SELECT name FROM {CATALOGUE_TABLE}")}

        def create_container(container: str) -> None:
            if container in container_names():
                raise EngineError(f"Container already exists: {container}")
            table = _table_for(container)
            conn.execute(
                f"CREATE TABLE {table} (key PRIMARY KEY, value TEXT NOT NULL) WITHOUT ROWID"
            )
            conn.execute(
                f"INSERT INTO {CATALOGUE_TABLE} (name, tbl) VALUES (?, ?)",
                (container, table),
            )

        def delete_container(container: str) -> None:
            row = conn.execute(
                f"SELECT tbl FROM {CATALOGUE_TABLE} WHERE name = ?", (container,)
            ).fetchone()
            if row is None:
                raise EngineNotFoundError(f"No container {container} in database {name}")
            conn.execute(f"DROP TABLE {row[0]}")
            conn.execute(f"DELETE FROM {CATALOGUE_TABLE} WHERE name = ?", (container,))

        ctx = UpgradeContext(
            old_version=current,
            new_version=target,
            create_container=create_container,
            delete_container=delete_container,
            container_names=container_names,
        )
        try:
            conn.execute("BEGIN IMMEDIATE")
            (stored,) = conn.execute("PRAGMA user_version").fetchone()
            if stored >= target:
                raise EngineVersionError(
                    f"Database {name} is already at version {stored}, cannot upgrade to {target}"
                )
            if on_upgrade is not None:
                on_upgrade(ctx)
            conn.execute(f"PRAGMA user_version = {int(target)}")
            conn.execute("COMMIT")
        except EngineError:
            conn.rollback()
            raise
        except Exception as e:
            conn.rollback()
            raise EngineError(f"Upgrade of {name} to version {target} aborted: {e}") from e
        logger.debug(
            "SQLite database upgraded",
            extra={"database": name, "old_version": current, "new_version": target},
        )

    async def delete_database(self, name: str) -> None:
        await self._registry.request_exclusive(name, None)
        path = self._get_db_path(name)
        for suffix in ("", "-wal", "-shm"):
            Path(f"{path}{suffix}").unlink(missing_ok=True)
