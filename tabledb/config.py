"""
Configuration for tabledb.

Uses pydantic-settings for environment variable loading. Every setting
can be overridden with a TABLEDB_ prefixed variable, e.g.
TABLEDB_CONTAINER_POOL_SIZE=0 or TABLEDB_ENGINE=sqlite.

Invariants:
    - All settings have defaults suitable for tests and local development
    - container_pool_size 0 means one container per table
    - reopen_delay_ms is a fixed delay, there is no backoff
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

from .engine.base import StorageEngine
from .engine.memory import MemoryEngine
from .engine.sqlite import SqliteEngine

logger = logging.getLogger(__name__)


class TableDbSettings(BaseSettings):
    """tabledb configuration loaded from environment."""

    # Storage engine
    engine: Literal["memory", "sqlite"] = Field(default="memory", description="Engine backend")
    data_dir: str = Field(default="./tabledb-data", description="Directory for SQLite files")
    sqlite_busy_timeout_ms: int = Field(default=5000, ge=0, description="SQLite busy timeout")

    # Container layout
    container_pool_size: int = Field(
        default=64,
        ge=0,
        description="Physical containers shared by all tables (0 = one container per table)",
    )

    # Connection lifecycle
    reopen_delay_ms: int = Field(
        default=200,
        ge=1,
        le=60000,
        description="Fixed delay between reopen attempts",
    )

    # Transactions
    durability: Literal["relaxed", "strict", "default"] = Field(
        default="relaxed", description="Durability hint for readwrite transactions"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: Literal["text", "json"] = Field(default="text", description="Log output format")

    model_config = {"env_prefix": "TABLEDB_"}

    @property
    def reopen_delay(self) -> float:
        """Reopen delay in seconds."""
        return self.reopen_delay_ms / 1000.0

    @property
    def shared_containers(self) -> bool:
        return self.container_pool_size > 0

    def build_engine(self) -> StorageEngine:
        """Construct the configured storage engine."""
        if self.engine == "sqlite":
            return SqliteEngine(self.data_dir, busy_timeout_ms=self.sqlite_busy_timeout_ms)
        return MemoryEngine()

    def log_config(self) -> None:
        """Log the effective configuration."""
        logger.info(
            "tabledb configuration loaded",
            extra={
                "engine": self.engine,
                "data_dir": self.data_dir if self.engine == "sqlite" else None,
                "container_pool_size": self.container_pool_size,
                "reopen_delay_ms": self.reopen_delay_ms,
                "durability": self.durability,
                "log_level": self.log_level,
            },
        )
