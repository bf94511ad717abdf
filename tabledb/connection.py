"""
Connection lifecycle manager for tabledb.

A Database owns the single engine handle for one named database and
keeps it alive: the engine may close it, abort it, report an error on it
or announce that another handle is changing the schema version. Each of
those signals maps to one state transition plus at most one scheduled
effect, the reopen task.

States:
    OPENING       first open or a schema change in progress
    OPEN          a live handle is installed
    RECONNECTING  the handle was dropped; a reopen is scheduled
    DETACHED      the database was deleted (or downgraded) elsewhere
    CLOSED        close() was called; terminal

Invariants:
    - Only one engine open is in flight at a time (_open_lock)
    - Signals from a handle other than the current one are ignored
    - Reopen uses a fixed delay and retries until success or close()
    - close() is sticky; a new Database is needed to open again
    - Tables never hold a handle; they call ensure_open() per operation

How to change safely:
    - Every new engine signal needs a transition in _on_engine_event
    - Never await while holding _open_lock except for the engine open itself
    - Test reconnection with MemoryEngine.simulate_close()
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional, Set, Tuple

from .config import TableDbSettings
from .engine.base import (
    EngineBlockedError,
    EngineError,
    EngineEvent,
    EngineEventKind,
    EngineHandle,
    EngineVersionError,
    StorageEngine,
    UpgradeContext,
)
from .errors import BlockedError, ConnectivityError, DatabaseClosedError
from .keys import (
    DedicatedKeyspace,
    Keyspace,
    SharedKeyspace,
    container_name,
    select_container,
    validate_table_name,
)
from .table import Table

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle state of a Database."""

    OPENING = "opening"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    DETACHED = "detached"
    CLOSED = "closed"


class Database:
    """A named database with automatic reconnection.

    Use Database.open() rather than the constructor.

    Attributes:
        name: Database name
        reopen_count: Number of successful reopens after a dropped handle

    Example:
        >>> db = await Database.open("app", MemoryEngine())
        >>> events = await db.open_table("events", "id")
        >>> await events.put([{"id": 1, "kind": "login"}])
        >>> db.close()
    """

    def __init__(self, name: str, engine: StorageEngine, settings: TableDbSettings) -> None:
        self.name = name
        self._engine = engine
        self._settings = settings
        self._pool_size = settings.container_pool_size
        self._reopen_delay = settings.reopen_delay
        self._handle: Optional[EngineHandle] = None
        self._state = ConnectionState.OPENING
        self._should_reopen = True
        self._open_lock = asyncio.Lock()
        self._available = asyncio.Event()
        self._reopen_task: Optional[asyncio.Task] = None
        self._opened_tables: Set[str] = set()
        self.reopen_count = 0

    @classmethod
    async def open(
        cls,
        name: str,
        engine: Optional[StorageEngine] = None,
        settings: Optional[TableDbSettings] = None,
        *,
        container_pool_size: Optional[int] = None,
        reopen_delay: Optional[float] = None,
    ) -> Database:
        """Open (creating if needed) a database.

        Args:
            name: Database name
            engine: Storage engine; built from settings when omitted
            settings: Settings; loaded from the environment when omitted
            container_pool_size: Override settings.container_pool_size
            reopen_delay: Override settings.reopen_delay_ms, in seconds

        Raises:
            ConnectivityError: If the engine cannot open the database
            BlockedError: If a required upgrade is blocked by other handles
        """
        if not isinstance(name, str) or not name:
            raise ValueError(f"Database name must be a non-empty string, got {name!r}")
        settings = settings or TableDbSettings()
        overrides = {}
        if container_pool_size is not None:
            if container_pool_size < 0:
                raise ValueError(f"container_pool_size must be >= 0, got {container_pool_size}")
            overrides["container_pool_size"] = container_pool_size
        if reopen_delay is not None:
            overrides["reopen_delay_ms"] = max(1, round(reopen_delay * 1000))
        if overrides:
            settings = settings.model_copy(update=overrides)

        db = cls(name, engine or settings.build_engine(), settings)
        try:
            async with db._open_lock:
                handle = await db._open_handle()
        except EngineBlockedError as e:
            logger.error("Db was blocked when opening", extra={"database": name})
            raise BlockedError(str(e), database=name, operation="open") from e
        except EngineError as e:
            logger.error(f"Failed to open db: {e}", extra={"database": name})
            raise ConnectivityError(f"Failed to open database {name}: {e}", database=name) from e
        db._install(handle)
        return db

    @staticmethod
    async def destroy(
        name: str,
        engine: Optional[StorageEngine] = None,
        settings: Optional[TableDbSettings] = None,
    ) -> None:
        """Delete a database and all of its tables.

        Open Database objects on the same engine detach instead of blocking.

        Raises:
            BlockedError: If a handle that does not react to version changes is open
            ConnectivityError: If the engine fails to delete the database
        """
        engine = engine or (settings or TableDbSettings()).build_engine()
        try:
            await engine.delete_database(name)
        except EngineBlockedError as e:
            logger.error("Db was blocked when destroying", extra={"database": name})
            raise BlockedError(str(e), database=name, operation="destroy") from e
        except EngineError as e:
            logger.error(f"Failed to destroy db: {e}", extra={"database": name})
            raise ConnectivityError(f"Failed to destroy database {name}: {e}", database=name) from e
        logger.info("Db was destroyed", extra={"database": name})

    # Properties

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    @property
    def version(self) -> int:
        """Schema version of the current handle (0 while no handle is installed)."""
        return self._handle.version if self._handle is not None else 0

    @property
    def durability(self) -> str:
        return self._settings.durability

    @property
    def shared_containers(self) -> bool:
        return self._pool_size > 0

    @property
    def table_names(self) -> Set[str]:
        """Known tables.

        With dedicated containers this is the container set of the current
        handle; with shared containers it is the tables opened here.
        """
        if self.shared_containers:
            return set(self._opened_tables)
        if self._handle is None:
            return set()
        return set(self._handle.container_names)

    # Lifecycle

    async def ensure_open(self) -> EngineHandle:
        """Return the live handle, waiting while a reopen is pending.

        Raises:
            DatabaseClosedError: If close() was called
            ConnectivityError: If the database was deleted elsewhere
        """
        while True:
            if self._state is ConnectionState.CLOSED:
                raise DatabaseClosedError(self.name)
            if self._handle is not None:
                return self._handle
            if self._state is ConnectionState.DETACHED:
                raise ConnectivityError(
                    f"Database {self.name} was deleted or downgraded by another handle",
                    database=self.name,
                )
            await self._available.wait()

    def close(self) -> None:
        """Close the database and stop reopening it."""
        if self._state is ConnectionState.CLOSED:
            return
        self._should_reopen = False
        self._state = ConnectionState.CLOSED
        if self._reopen_task is not None and not self._reopen_task.done():
            self._reopen_task.cancel()
        self._drop_handle()
        self._available.set()
        logger.info("Db was closed", extra={"database": self.name})

    async def __aenter__(self) -> Database:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    async def _open_handle(self) -> EngineHandle:
        """Open at the stored version, provisioning pool containers if missing.

        Caller must hold _open_lock.
        """
        handle = await self._engine.open(self.name, on_upgrade=self._on_upgrade)
        if self._pool_size and self._missing_pool_containers(handle.container_names):
            version = handle.version
            handle.close()
            logger.info(
                "Provisioning missing pool containers",
                extra={"database": self.name, "version": version + 1},
            )
            handle = await self._engine.open(self.name, version + 1, on_upgrade=self._on_upgrade)
        return handle

    def _missing_pool_containers(self, existing: Set[str]) -> Set[str]:
        wanted = {container_name(self.name, i) for i in range(self._pool_size)}
        return wanted - existing

    def _on_upgrade(self, ctx: UpgradeContext) -> None:
        """Replay the schema this Database needs inside an upgrade."""
        if not self._pool_size:
            return
        for name in sorted(self._missing_pool_containers(ctx.container_names())):
            ctx.create_container(name)
        logger.debug(
            "Pool containers ensured",
            extra={"database": self.name, "version": ctx.new_version},
        )

    def _install(self, handle: EngineHandle) -> None:
        self._handle = handle
        handle.set_listener(lambda event: self._on_engine_event(handle, event))
        self._state = ConnectionState.OPEN
        self._available.set()
        logger.info(
            f"Open db successfully: name: {self.name}, version: {handle.version}",
            extra={"database": self.name, "version": handle.version},
        )

    def _drop_handle(self) -> None:
        handle, self._handle = self._handle, None
        self._available.clear()
        if handle is not None:
            handle.set_listener(None)
            handle.close()

    def _on_engine_event(self, handle: EngineHandle, event: EngineEvent) -> None:
        if handle is not self._handle:
            logger.debug(
                "Ignoring event from stale handle",
                extra={"database": self.name, "event": str(event)},
            )
            return
        logger.warning(
            f"Db connection event: name: {self.name}, event: {event}",
            extra={"database": self.name, "event": event.kind.value},
        )
        self._drop_handle()

        if event.kind is EngineEventKind.VERSION_CHANGE:
            if event.new_version is not None and event.new_version > handle.version:
                self._resync()
            else:
                self._state = ConnectionState.DETACHED
                self._available.set()
            return

        self._resync()

    def _resync(self) -> None:
        """Reopen at the stored version unless close() was called meanwhile."""
        if self._state is ConnectionState.CLOSED:
            return
        self._state = ConnectionState.RECONNECTING
        self._schedule_reopen()

    def _schedule_reopen(self) -> None:
        if not self._should_reopen:
            return
        if self._reopen_task is not None and not self._reopen_task.done():
            return
        self._reopen_task = asyncio.get_running_loop().create_task(self._reopen_loop())

    async def _reopen_loop(self) -> None:
        attempt = 0
        while self._should_reopen:
            await asyncio.sleep(self._reopen_delay)
            attempt += 1
            async with self._open_lock:
                if not self._should_reopen or self._handle is not None:
                    return
                try:
                    handle = await self._open_handle()
                except Exception as e:
                    logger.error(
                        f"Failed to open db: name: {self.name}, reason: {e}, will try again...",
                        extra={"database": self.name, "attempt": attempt},
                    )
                    continue
                if not self._should_reopen:
                    handle.close()
                    return
                self._install(handle)
                self.reopen_count += 1
                return

    # Tables

    def _layout_for(self, table_name: str) -> Tuple[str, Keyspace]:
        """Container and keyspace a table is bound to."""
        if self._pool_size:
            index = select_container(table_name, self._pool_size)
            return container_name(self.name, index), SharedKeyspace(table_name)
        return table_name, DedicatedKeyspace()

    async def open_table(self, table_name: str, key_column: str) -> Table:
        """Open a table, creating its container if containers are dedicated.

        Raises:
            InvalidTableNameError: If table_name is unusable
            BlockedError: If the schema change is blocked by other handles
            ConnectivityError: If the database cannot be reopened
        """
        validate_table_name(table_name)
        if not isinstance(key_column, str) or not key_column:
            raise ValueError(f"key_column must be a non-empty string, got {key_column!r}")
        if self.shared_containers:
            await self.ensure_open()
        else:
            await self._alter_schema(create=table_name)
        self._opened_tables.add(table_name)
        return Table(table_name, key_column, self)

    async def destroy_table(self, table_name: str) -> None:
        """Remove a table and all of its rows.

        With shared containers the table's key range is cleared; with
        dedicated containers its container is dropped.
        """
        validate_table_name(table_name)
        if self.shared_containers:
            await Table(table_name, "", self).clear()
        else:
            await self._alter_schema(delete=table_name)
        self._opened_tables.discard(table_name)

    async def _alter_schema(
        self,
        create: Optional[str] = None,
        delete: Optional[str] = None,
    ) -> None:
        """Create or delete a dedicated container with a version bump."""
        while True:
            handle = await self.ensure_open()
            async with self._open_lock:
                if self._handle is not handle:
                    continue
                names = handle.container_names
                if (create is None or create in names) and (delete is None or delete not in names):
                    return

                def upgrade(ctx: UpgradeContext) -> None:
                    self._on_upgrade(ctx)
                    if create is not None and create not in ctx.container_names():
                        ctx.create_container(create)
                    if delete is not None and delete in ctx.container_names():
                        ctx.delete_container(delete)

                version = handle.version
                self._drop_handle()
                self._state = ConnectionState.OPENING
                try:
                    new_handle = await self._engine.open(self.name, version + 1, on_upgrade=upgrade)
                except EngineVersionError:
                    logger.info(
                        "Schema changed concurrently, resyncing",
                        extra={"database": self.name, "version": version},
                    )
                    self._resync()
                    continue
                except EngineBlockedError as e:
                    self._resync()
                    raise BlockedError(str(e), database=self.name, operation="upgrade") from e
                except EngineError as e:
                    self._resync()
                    raise ConnectivityError(
                        f"Failed to upgrade database {self.name}: {e}", database=self.name
                    ) from e
                if not self._should_reopen:
                    new_handle.close()
                    raise DatabaseClosedError(self.name)
                self._install(new_handle)
                logger.info(
                    "Db schema changed",
                    extra={
                        "database": self.name,
                        "version": new_handle.version,
                        "created": create,
                        "deleted": delete,
                    },
                )
                return
