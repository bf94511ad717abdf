"""
Base protocol and types for the storage engine boundary.

This module defines the StorageEngine protocol that every backend must
implement, along with the key range type, engine events and the errors
engines raise. The engine is an ordered, transactional key-value store
with named containers; everything above it (tables, key encoding,
reconnection) lives outside this package.

Invariants:
    - Keys are numbers or strings; every number sorts before every string
    - KeyRange bounds are compared with the same ordering the engine uses
    - An upgrade callback runs exactly once per version bump
    - Engine events are delivered asynchronously, once per occurrence
    - EngineDataError rejects a single request, never the whole transaction

How to change safely:
    - Protocol changes require updating MemoryEngine and SqliteEngine
    - Keep sort_key() and the SQLite ordering of mixed keys in agreement
    - Add new event kinds only together with a Database transition for them
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import (
    Any,
    AsyncContextManager,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Set,
    Tuple,
    Union,
    runtime_checkable,
)

logger = logging.getLogger(__name__)

Key = Union[int, float, str]


class EngineError(Exception):
    """Base exception for storage engine operations."""
    pass


class EngineUnavailableError(EngineError):
    """The engine could not open the database."""
    pass


class EngineClosedError(EngineError):
    """The handle was closed and can no longer start transactions."""
    pass


class EngineBlockedError(EngineError):
    """Other open handles prevent an upgrade or delete."""
    pass


class EngineVersionError(EngineError):
    """Requested version is lower than the stored version."""
    pass


class EngineDataError(EngineError):
    """A single request was rejected (invalid key or value)."""
    pass


class EngineNotFoundError(EngineError):
    """The named container does not exist."""
    pass


class Direction(Enum):
    """Cursor iteration direction."""

    NEXT = "next"
    PREV = "prev"


class TransactionMode(Enum):
    """Transaction access mode."""

    READONLY = "readonly"
    READWRITE = "readwrite"


DURABILITY_HINTS = ("relaxed", "strict", "default")


class EngineEventKind(Enum):
    """Signals an engine may raise on an open handle."""

    CLOSED = "closed"
    ABORTED = "aborted"
    ERROR = "error"
    VERSION_CHANGE = "versionchange"


@dataclass(frozen=True)
class EngineEvent:
    """A signal delivered to a handle's listener.

    Attributes:
        kind: What happened
        old_version: Version of the handle receiving the event
        new_version: Version being installed (None when the database is deleted)
        reason: Human readable cause, for logging
    """
    kind: EngineEventKind
    old_version: int = 0
    new_version: Optional[int] = None
    reason: str = ""

    def __str__(self) -> str:
        if self.kind is EngineEventKind.VERSION_CHANGE:
            return f"{self.kind.value}({self.old_version} -> {self.new_version})"
        return f"{self.kind.value}({self.reason})" if self.reason else self.kind.value


EventListener = Callable[[EngineEvent], None]


def validate_key(key: Any) -> Key:
    """Return key unchanged if the engine accepts it.

    Raises:
        EngineDataError: If key is not a number or string
    """
    if isinstance(key, bool) or not isinstance(key, (int, float, str)):
        raise EngineDataError(f"Invalid key: {key!r}")
    if isinstance(key, float) and math.isnan(key):
        raise EngineDataError("Invalid key: NaN")
    return key


def sort_key(key: Key) -> Tuple[int, Any]:
    """Ordering used by every engine: numbers first, then strings."""
    if isinstance(key, str):
        return (1, key)
    return (0, key)


@dataclass(frozen=True)
class KeyRange:
    """A contiguous slice of the key space.

    A bound of None is unbounded on that side. Open bounds exclude the
    bound key itself.
    """
    lower: Optional[Key] = None
    upper: Optional[Key] = None
    lower_open: bool = False
    upper_open: bool = False

    def __post_init__(self) -> None:
        if self.lower is not None:
            validate_key(self.lower)
        if self.upper is not None:
            validate_key(self.upper)
        if self.lower is not None and self.upper is not None:
            lo, hi = sort_key(self.lower), sort_key(self.upper)
            if lo > hi or (lo == hi and (self.lower_open or self.upper_open)):
                raise ValueError(f"Empty key range: {self}")

    @classmethod
    def only(cls, key: Key) -> KeyRange:
        return cls(key, key)

    @classmethod
    def lower_bound(cls, key: Key, open: bool = False) -> KeyRange:
        return cls(lower=key, lower_open=open)

    @classmethod
    def upper_bound(cls, key: Key, open: bool = False) -> KeyRange:
        return cls(upper=key, upper_open=open)

    @classmethod
    def bound(
        cls,
        lower: Key,
        upper: Key,
        lower_open: bool = False,
        upper_open: bool = False,
    ) -> KeyRange:
        return cls(lower, upper, lower_open, upper_open)

    def with_lower(self, key: Optional[Key], open: bool = False) -> KeyRange:
        """Same range with its lower bound replaced."""
        return replace(self, lower=key, lower_open=open if key is not None else False)

    def includes(self, key: Key) -> bool:
        k = sort_key(key)
        if self.lower is not None:
            lo = sort_key(self.lower)
            if k < lo or (self.lower_open and k == lo):
                return False
        if self.upper is not None:
            hi = sort_key(self.upper)
            if k > hi or (self.upper_open and k == hi):
                return False
        return True

    def __str__(self) -> str:
        left = "(" if self.lower_open or self.lower is None else "["
        right = ")" if self.upper_open or self.upper is None else "]"
        lo = "-inf" if self.lower is None else repr(self.lower)
        hi = "+inf" if self.upper is None else repr(self.upper)
        return f"{left}{lo}, {hi}{right}"


@dataclass
class UpgradeContext:
    """Passed to the upgrade callback while the version is being bumped.

    Attributes:
        old_version: Stored version before the upgrade (0 for a new database)
        new_version: Version being installed
        create_container: Create a named container
        delete_container: Remove a named container and its rows
        container_names: Names of the containers that currently exist
    """
    old_version: int
    new_version: int
    create_container: Callable[[str], None]
    delete_container: Callable[[str], None]
    container_names: Callable[[], Set[str]]


UpgradeCallback = Callable[[UpgradeContext], None]


@runtime_checkable
class EngineCursor(Protocol):
    """A position inside a container, valid only within its transaction."""

    @property
    def key(self) -> Key:
        ...

    @property
    def value(self) -> Any:
        ...

    async def advance(self, count: int) -> bool:
        """Move count rows in the cursor direction.

        Returns:
            False if the cursor ran past the end of its range
        """
        ...


@runtime_checkable
class EngineContainer(Protocol):
    """A named ordered key space inside a transaction."""

    async def put(self, value: Any, key: Key) -> None:
        ...

    async def delete(self, key_range: KeyRange) -> None:
        ...

    async def clear(self) -> None:
        ...

    async def count(self, key_range: Optional[KeyRange] = None) -> int:
        ...

    async def get_all(
        self,
        key_range: Optional[KeyRange] = None,
        limit: Optional[int] = None,
    ) -> List[Any]:
        ...

    async def open_cursor(
        self,
        key_range: Optional[KeyRange] = None,
        direction: Direction = Direction.NEXT,
    ) -> Optional[EngineCursor]:
        """Position a cursor on the first row of the range in direction.

        Returns:
            None if the range holds no rows
        """
        ...


@runtime_checkable
class EngineTransaction(Protocol):
    """An open transaction scoped to one or more containers."""

    mode: TransactionMode

    def container(self, name: str) -> EngineContainer:
        ...


@runtime_checkable
class EngineHandle(Protocol):
    """An open connection to one database."""

    @property
    def name(self) -> str:
        ...

    @property
    def version(self) -> int:
        ...

    @property
    def container_names(self) -> Set[str]:
        ...

    @property
    def is_closed(self) -> bool:
        ...

    def set_listener(self, listener: Optional[EventListener]) -> None:
        ...

    def transaction(
        self,
        containers: Union[str, Iterable[str]],
        mode: TransactionMode = TransactionMode.READONLY,
        durability: str = "default",
    ) -> AsyncContextManager[EngineTransaction]:
        """Open a transaction; commits on normal exit, rolls back on exception.

        Raises:
            EngineClosedError: If the handle is closed
            EngineNotFoundError: If a container does not exist
        """
        ...

    def close(self) -> None:
        """Close the handle. No event is delivered for an explicit close."""
        ...


@runtime_checkable
class StorageEngine(Protocol):
    """Protocol for storage engine backends.

    Example:
        >>> engine = MemoryEngine()
        >>> handle = await engine.open("app", on_upgrade=lambda ctx: ctx.create_container("t"))
        >>> async with handle.transaction("t", TransactionMode.READWRITE) as tx:
        ...     await tx.container("t").put({"id": 1}, 1)
    """

    async def open(
        self,
        name: str,
        version: Optional[int] = None,
        on_upgrade: Optional[UpgradeCallback] = None,
    ) -> EngineHandle:
        """Open a database, upgrading it first if version is newer.

        With version None an existing database opens at its stored version
        and a new one is created at version 1.

        Raises:
            EngineUnavailableError: If the engine cannot be reached
            EngineVersionError: If version is lower than the stored version
            EngineBlockedError: If other open handles refuse to close
        """
        ...

    async def delete_database(self, name: str) -> None:
        """Delete a database and all its containers.

        Raises:
            EngineBlockedError: If other open handles refuse to close
        """
        ...


def normalize_containers(containers: Union[str, Iterable[str]]) -> List[str]:
    """Sorted, de-duplicated container names for a transaction scope."""
    if isinstance(containers, str):
        return [containers]
    return sorted(set(containers))


class BaseHandle:
    """Listener bookkeeping shared by engine handle implementations."""

    def __init__(self, name: str, version: int) -> None:
        self._name = name
        self._version = version
        self._closed = False
        self._listener: Optional[EventListener] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> int:
        return self._version

    @property
    def is_closed(self) -> bool:
        return self._closed

    def set_listener(self, listener: Optional[EventListener]) -> None:
        self._listener = listener

    def emit(self, event: EngineEvent) -> None:
        """Deliver event to the listener on the next loop iteration."""
        listener = self._listener
        if listener is None:
            return
        logger.debug(
            "Engine event scheduled",
            extra={"database": self._name, "event": str(event)},
        )
        asyncio.get_running_loop().call_soon(listener, event)

    def _check_open(self) -> None:
        if self._closed:
            raise EngineClosedError(f"Database handle is closed: {self._name}")


class HandleRegistry:
    """Tracks open handles per database for version-change delivery.

    Before an upgrade or delete, every other open handle receives a
    VERSION_CHANGE event. Listeners are expected to close their handle;
    handles still open after one loop iteration block the request.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, Set[BaseHandle]] = {}

    def register(self, handle: BaseHandle) -> None:
        self._handles.setdefault(handle.name, set()).add(handle)

    def unregister(self, handle: BaseHandle) -> None:
        handles = self._handles.get(handle.name)
        if handles is None:
            return
        handles.discard(handle)
        if not handles:
            del self._handles[handle.name]

    def open_handles(self, name: str) -> List[BaseHandle]:
        return [h for h in self._handles.get(name, ()) if not h.is_closed]

    async def request_exclusive(self, name: str, new_version: Optional[int]) -> None:
        """Ask other handles on name to close.

        Raises:
            EngineBlockedError: If any handle is still open afterwards
        """
        others = self.open_handles(name)
        if not others:
            return
        for handle in others:
            handle.emit(
                EngineEvent(
                    kind=EngineEventKind.VERSION_CHANGE,
                    old_version=handle.version,
                    new_version=new_version,
                )
            )
        # Listeners were queued with call_soon; yielding once lets them run.
        await asyncio.sleep(0)
        still_open = self.open_handles(name)
        if still_open:
            raise EngineBlockedError(
                f"Database {name} is blocked by {len(still_open)} open handle(s)"
            )
