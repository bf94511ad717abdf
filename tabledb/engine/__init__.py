"""
Storage engine backends for tabledb.

This package provides the engine boundary that tables run on:
- StorageEngine protocol and KeyRange
- MemoryEngine: in-process engine with fault injection for tests
- SqliteEngine: on-disk engine, one SQLite file per database

Usage:
    from tabledb.engine import MemoryEngine, SqliteEngine

    engine = MemoryEngine()
    handle = await engine.open("app")
"""

from .base import (
    Direction,
    EngineBlockedError,
    EngineClosedError,
    EngineDataError,
    EngineError,
    EngineEvent,
    EngineEventKind,
    EngineHandle,
    EngineNotFoundError,
    EngineUnavailableError,
    EngineVersionError,
    Key,
    KeyRange,
    StorageEngine,
    TransactionMode,
    UpgradeContext,
    sort_key,
    validate_key,
)
from .memory import MemoryEngine
from .sqlite import SqliteEngine

__all__ = [
    "Direction",
    "EngineBlockedError",
    "EngineClosedError",
    "EngineDataError",
    "EngineError",
    "EngineEvent",
    "EngineEventKind",
    "EngineHandle",
    "EngineNotFoundError",
    "EngineUnavailableError",
    "EngineVersionError",
    "Key",
    "KeyRange",
    "MemoryEngine",
    "SqliteEngine",
    "StorageEngine",
    "TransactionMode",
    "UpgradeContext",
    "sort_key",
    "validate_key",
]
