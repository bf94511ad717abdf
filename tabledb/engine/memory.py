"""
In-memory storage engine implementation for testing.

This module provides an ordered, transactional in-memory engine for:
- Unit tests
- Integration tests that simulate engine-initiated closures
- Local development without touching the filesystem

Invariants:
    - All data is lost when the engine instance is dropped
    - Several Database objects sharing one MemoryEngine behave like
      several tabs sharing one browser profile
    - Rows are stored and returned as deep copies
    - Transactions on a container are serialised whatever their mode,
      so readers never see rows of an uncommitted readwrite transaction

How to change safely:
    - This is test-oriented code, but Table semantics are verified on it
    - Keep behaviour identical to SqliteEngine for ordering and ranges
    - Add fault injection helpers rather than special cases in callers
"""

from __future__ import annotations

import asyncio
import copy
import logging
from bisect import bisect_left, bisect_right
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

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
    sort_key,
    validate_key,
)

logger = logging.getLogger(__name__)

SortKey = Tuple[int, Any]


class InMemoryContainer:
    """Sorted rows of one container."""

    def __init__(self) -> None:
        self._order: List[SortKey] = []
        self._rows: Dict[SortKey, Tuple[Key, Any]] = {}
        self.lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._order)

    def span(self, key_range: Optional[KeyRange]) -> Tuple[int, int]:
        """Index interval [start, stop) of the rows inside key_range."""
        if key_range is None:
            return 0, len(self._order)
        start = 0
        stop = len(self._order)
        if key_range.lower is not None:
            lo = sort_key(key_range.lower)
            bisect = bisect_right if key_range.lower_open else bisect_left
            start = bisect(self._order, lo)
        if key_range.upper is not None:
            hi = sort_key(key_range.upper)
            bisect = bisect_left if key_range.upper_open else bisect_right
            stop = bisect(self._order, hi)
        return start, max(start, stop)

    def row_at(self, index: int) -> Tuple[Key, Any]:
        return self._rows[self._order[index]]

    def index_of(self, key: Key) -> int:
        return bisect_left(self._order, sort_key(key))

    def get(self, sk: SortKey) -> Optional[Tuple[Key, Any]]:
        return self._rows.get(sk)

    def set(self, key: Key, value: Any) -> None:
        sk = sort_key(key)
        if sk not in self._rows:
            self._order.insert(bisect_left(self._order, sk), sk)
        self._rows[sk] = (key, value)

    def remove(self, sk: SortKey) -> None:
        if sk in self._rows:
            del self._rows[sk]
            self._order.pop(bisect_left(self._order, sk))


@dataclass
class InMemoryDatabase:
    """One named database: version plus containers."""
    version: int = 0
    containers: Dict[str, InMemoryContainer] = field(default_factory=dict)


class MemoryCursor:
    """Cursor over a container range, bound to its transaction."""

    def __init__(
        self,
        store: MemoryContainerView,
        key_range: Optional[KeyRange],
        direction: Direction,
        key: Key,
        value: Any,
    ) -> None:
        self._store = store
        self._range = key_range
        self._direction = direction
        self._key = key
        self._value = value

    @property
    def key(self) -> Key:
        return self._key

    @property
    def value(self) -> Any:
        return copy.deepcopy(self._value)

    async def advance(self, count: int) -> bool:
        if count <= 0:
            raise EngineDataError(f"advance() count must be positive, got {count}")
        await self._store._request()
        data = self._store._data
        start, stop = data.span(self._range)
        index = data.index_of(self._key)
        if self._direction is Direction.NEXT:
            # index points at (or just past) the current key
            if index < stop and data.row_at(index)[0] == self._key:
                index += count
            else:
                index += count - 1
        else:
            index -= count
        if index < start or index >= stop:
            return False
        self._key, self._value = data.row_at(index)
        return True


class MemoryContainerView:
    """Container operations performed inside one transaction."""

    def __init__(self, tx: MemoryTransaction, name: str, data: InMemoryContainer) -> None:
        self._tx = tx
        self._name = name
        self._data = data

    async def _request(self) -> None:
        await self._tx._round_trip()

    def _require_write(self) -> None:
        if self._tx.mode is not TransactionMode.READWRITE:
            raise EngineError(f"Transaction on {self._name} is read-only")

    async def put(self, value: Any, key: Key) -> None:
        await self._request()
        self._require_write()
        validate_key(key)
        try:
            stored = copy.deepcopy(value)
        except Exception as e:
            raise EngineDataError(f"Value for key {key!r} cannot be cloned: {e}") from e
        self._tx._journal_entry(self._data, sort_key(key))
        self._data.set(key, stored)

    async def delete(self, key_range: KeyRange) -> None:
        await self._request()
        self._require_write()
        start, stop = self._data.span(key_range)
        doomed = [sort_key(self._data.row_at(i)[0]) for i in range(start, stop)]
        for sk in doomed:
            self._tx._journal_entry(self._data, sk)
            self._data.remove(sk)

    async def clear(self) -> None:
        await self._request()
        self._require_write()
        for sk in list(self._data._order):
            self._tx._journal_entry(self._data, sk)
            self._data.remove(sk)

    async def count(self, key_range: Optional[KeyRange] = None) -> int:
        await self._request()
        start, stop = self._data.span(key_range)
        return stop - start

    async def get_all(
        self,
        key_range: Optional[KeyRange] = None,
        limit: Optional[int] = None,
    ) -> List[Any]:
        await self._request()
        start, stop = self._data.span(key_range)
        if limit is not None:
            stop = min(stop, start + limit)
        return [copy.deepcopy(self._data.row_at(i)[1]) for i in range(start, stop)]

    async def open_cursor(
        self,
        key_range: Optional[KeyRange] = None,
        direction: Direction = Direction.NEXT,
    ) -> Optional[MemoryCursor]:
        await self._request()
        start, stop = self._data.span(key_range)
        if start >= stop:
            return None
        index = start if direction is Direction.NEXT else stop - 1
        key, value = self._data.row_at(index)
        return MemoryCursor(self, key_range, direction, key, value)


class MemoryTransaction:
    """A transaction with an undo journal for rollback."""

    def __init__(
        self,
        handle: MemoryHandle,
        database: InMemoryDatabase,
        names: List[str],
        mode: TransactionMode,
    ) -> None:
        self.mode = mode
        self._handle = handle
        self._views = {
            name: MemoryContainerView(self, name, database.containers[name]) for name in names
        }
        self._journal: List[Tuple[InMemoryContainer, SortKey, Optional[Tuple[Key, Any]]]] = []
        self._active = True

    def container(self, name: str) -> MemoryContainerView:
        if name not in self._views:
            raise EngineNotFoundError(f"Container {name} is not in the transaction scope")
        return self._views[name]

    async def _round_trip(self) -> None:
        if not self._active:
            raise EngineError("Transaction is no longer active")
        self._handle._engine.request_count += 1
        await asyncio.sleep(0)
        if self._handle.is_closed:
            raise EngineClosedError(f"Database handle closed during transaction: {self._handle.name}")

    def _journal_entry(self, data: InMemoryContainer, sk: SortKey) -> None:
        self._journal.append((data, sk, data.get(sk)))

    def commit(self) -> None:
        self._active = False
        self._journal.clear()

    def rollback(self) -> None:
        self._active = False
        for data, sk, previous in reversed(self._journal):
            if previous is None:
                data.remove(sk)
            else:
                data.set(*previous)
        self._journal.clear()


class MemoryHandle(BaseHandle):
    """Open connection to an in-memory database."""

    def __init__(self, engine: MemoryEngine, name: str, database: InMemoryDatabase) -> None:
        super().__init__(name, database.version)
        self._engine = engine
        self._database = database

    @property
    def container_names(self) -> Set[str]:
        return set(self._database.containers)

    @asynccontextmanager
    async def transaction(
        self,
        containers: Union[str, Iterable[str]],
        mode: TransactionMode = TransactionMode.READONLY,
        durability: str = "default",
    ) -> AsyncIterator[MemoryTransaction]:
        self._check_open()
        names = normalize_containers(containers)
        for name in names:
            if name not in self._database.containers:
                raise EngineNotFoundError(f"No container {name} in database {self._name}")

        async with AsyncExitStack() as stack:
            for name in names:
                await stack.enter_async_context(self._database.containers[name].lock)
            self._check_open()
            tx = MemoryTransaction(self, self._database, names, mode)
            try:
                yield tx
            except BaseException:
                tx.rollback()
                raise
            if self._closed:
                tx.rollback()
                raise EngineClosedError(f"Database handle closed before commit: {self._name}")
            tx.commit()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._engine._registry.unregister(self)
        logger.debug("Memory handle closed", extra={"database": self._name})


class MemoryEngine:
    """In-memory implementation of StorageEngine for testing.

    Attributes:
        request_count: Number of container requests served, for asserting
            round-trip counts

    Example:
        >>> engine = MemoryEngine()
        >>> db = await Database.open("app", engine)
        >>> engine.simulate_close("app")   # the manager reopens transparently
    """

    def __init__(self) -> None:
        self._databases: Dict[str, InMemoryDatabase] = {}
        self._registry = HandleRegistry()
        self._available = True
        self._failing_opens = 0
        self._upgrade_counts: Dict[str, int] = {}
        self.request_count = 0

    async def open(
        self,
        name: str,
        version: Optional[int] = None,
        on_upgrade: Optional[UpgradeCallback] = None,
    ) -> MemoryHandle:
        await asyncio.sleep(0)
        if not self._available:
            raise EngineUnavailableError(f"Engine unavailable, cannot open {name}")
        if self._failing_opens > 0:
            self._failing_opens -= 1
            raise EngineUnavailableError(f"Injected open failure for {name}")
        if version is not None and version < 1:
            raise EngineVersionError(f"Version must be >= 1, got {version}")

        current = self._current_version(name)
        target = version if version is not None else max(current, 1)
        if target < current:
            raise EngineVersionError(
                f"Requested version {target} is less than stored version {current} for {name}"
            )
        if target > current:
            await self._registry.request_exclusive(name, target)
            current = self._current_version(name)
            if target < current:
                raise EngineVersionError(
                    f"Requested version {target} is less than stored version {current} for {name}"
                )
            if target > current:
                self._upgrade(name, current, target, on_upgrade)

        handle = MemoryHandle(self, name, self._databases[name])
        self._registry.register(handle)
        return handle

    def _current_version(self, name: str) -> int:
        database = self._databases.get(name)
        return database.version if database is not None else 0

    def _upgrade(
        self,
        name: str,
        current: int,
        target: int,
        on_upgrade: Optional[UpgradeCallback],
    ) -> None:
        existing = self._databases.get(name)
        staged = dict(existing.containers) if existing is not None else {}

        def create_container(container: str) -> None:
            if container in staged:
                raise EngineError(f"Container already exists: {container}")
            staged[container] = InMemoryContainer()

        def delete_container(container: str) -> None:
            if container not in staged:
                raise EngineNotFoundError(f"No container {container} in database {name}")
            del staged[container]

        ctx = UpgradeContext(
            old_version=current,
            new_version=target,
            create_container=create_container,
            delete_container=delete_container,
            container_names=lambda: set(staged),
        )
        if on_upgrade is not None:
            try:
                on_upgrade(ctx)
            except EngineError:
                raise
            except Exception as e:
                raise EngineError(f"Upgrade of {name} to version {target} aborted: {e}") from e

        self._databases[name] = InMemoryDatabase(version=target, containers=staged)
        self._upgrade_counts[name] = self._upgrade_counts.get(name, 0) + 1
        logger.debug(
            "Memory database upgraded",
            extra={"database": name, "old_version": current, "new_version": target},
        )

    async def delete_database(self, name: str) -> None:
        await asyncio.sleep(0)
        await self._registry.request_exclusive(name, None)
        self._databases.pop(name, None)

    # Testing helpers

    def set_available(self, available: bool) -> None:
        """Make subsequent open() calls fail (False) or succeed (True)."""
        self._available = available

    def fail_next_opens(self, count: int) -> None:
        """Make the next count open() calls fail."""
        self._failing_opens = count

    def simulate_close(self, name: str, reason: str = "simulated") -> None:
        """Close every open handle on name as if the engine dropped them."""
        for handle in self._registry.open_handles(name):
            handle.close()
            handle.emit(EngineEvent(EngineEventKind.CLOSED, handle.version, reason=reason))

    def simulate_abort(self, name: str, reason: str = "simulated") -> None:
        """Signal an abort on every open handle of name."""
        for handle in self._registry.open_handles(name):
            handle.emit(EngineEvent(EngineEventKind.ABORTED, handle.version, reason=reason))

    def simulate_error(self, name: str, reason: str = "simulated") -> None:
        """Signal an error on every open handle of name."""
        for handle in self._registry.open_handles(name):
            handle.emit(EngineEvent(EngineEventKind.ERROR, handle.version, reason=reason))

    def upgrade_count(self, name: str) -> int:
        """Number of upgrade callbacks run for name."""
        return self._upgrade_counts.get(name, 0)

    def open_handle_count(self, name: str) -> int:
        return len(self._registry.open_handles(name))

    def database_names(self) -> List[str]:
        return sorted(self._databases)
