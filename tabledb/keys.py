"""
Key encoding and container selection for shared containers.

When many logical tables share a bounded pool of physical containers,
each row is stored under an encoded key:

    <table name>^<marker>^<payload>

where marker is 0 for the before-first sentinel, 1 for a data row and 2
for the after-last sentinel (sentinels carry no payload). The payload is
a type tag followed by the key: "n" and a zero-padded 9-digit integer,
or "s" and the string verbatim. Numbers therefore sort before strings,
as they do in the engine, and integers sort numerically.

Invariants:
    - Table names never contain "^", so a table's keys all sort strictly
      between its own two sentinels and outside every other table's
    - decode(encode(name, key)) == (name, key)
    - select_container() is stable across processes (Adler-32)

How to change safely:
    - Any change to the encoding makes existing shared data unreadable
    - MAX_INTEGER_KEY is a hard limit of the encoding, not a soft default
"""

from __future__ import annotations

import zlib
from typing import Any, Optional, Tuple, Union

from .engine.base import EngineDataError, Key, KeyRange, validate_key
from .errors import InvalidTableNameError, KeyEncodingError

SEPARATOR = "^"

MARKER_BEFORE_FIRST = "0"
MARKER_ROW = "1"
MARKER_AFTER_LAST = "2"

NUMBER_TAG = "n"
STRING_TAG = "s"

# Largest representable integer key is MAX_INTEGER_KEY - 1.
INTEGER_WIDTH = 9
MAX_INTEGER_KEY = 10 ** INTEGER_WIDTH


def validate_table_name(name: Any) -> str:
    """Return name if it can be used as a table name.

    Raises:
        InvalidTableNameError: If name is not a non-empty string without "^"
    """
    if not isinstance(name, str) or not name or SEPARATOR in name:
        raise InvalidTableNameError(name)
    return name


def _encode_payload(key: Any) -> str:
    if isinstance(key, bool):
        raise KeyEncodingError(f"Boolean keys are not supported: {key!r}", key)
    if isinstance(key, int):
        if key < 0 or key >= MAX_INTEGER_KEY:
            raise KeyEncodingError(
                f"Integer key {key} outside supported range [0, {MAX_INTEGER_KEY})", key
            )
        return f"{NUMBER_TAG}{key:0{INTEGER_WIDTH}d}"
    if isinstance(key, str):
        return STRING_TAG + key
    raise KeyEncodingError(f"Keys must be int or str, got {type(key).__name__}", key)


class KeyCodec:
    """Builds encoded keys and sentinels for one table."""

    def __init__(self, table_name: str) -> None:
        self.table_name = validate_table_name(table_name)
        self._prefix = table_name + SEPARATOR

    def encode(self, key: Any) -> str:
        return f"{self._prefix}{MARKER_ROW}{SEPARATOR}{_encode_payload(key)}"

    def before_first(self) -> str:
        return self._prefix + MARKER_BEFORE_FIRST

    def after_last(self) -> str:
        return self._prefix + MARKER_AFTER_LAST


def decode(encoded: str) -> Tuple[str, Union[int, str]]:
    """Split an encoded row key into (table name, key).

    Raises:
        KeyEncodingError: If encoded is not a data row key
    """
    if not isinstance(encoded, str):
        raise KeyEncodingError(f"Encoded keys are strings, got {encoded!r}", encoded)
    name, _, rest = encoded.partition(SEPARATOR)
    marker, sep, payload = rest.partition(SEPARATOR)
    if not name or marker != MARKER_ROW or not sep or not payload:
        raise KeyEncodingError(f"Not an encoded row key: {encoded!r}", encoded)
    tag, body = payload[0], payload[1:]
    if tag == STRING_TAG:
        return name, body
    if tag == NUMBER_TAG and len(body) == INTEGER_WIDTH and body.isdigit():
        return name, int(body)
    raise KeyEncodingError(f"Unknown key payload in {encoded!r}", encoded)


def select_container(table_name: str, pool_size: int) -> int:
    """Index of the pooled container that hosts table_name.

    Adler-32 read as a signed 32-bit integer, so assignments match other
    implementations that use the signed checksum.
    """
    if pool_size <= 0:
        raise ValueError(f"pool_size must be positive, got {pool_size}")
    checksum = zlib.adler32(table_name.encode("utf-8"))
    if checksum >= 2 ** 31:
        checksum -= 2 ** 32
    return abs(checksum) % pool_size


def container_name(db_name: str, index: int) -> str:
    return f"{db_name}_{index}"


class SharedKeyspace:
    """Key ranges for a table living in a shared container."""

    shared = True

    def __init__(self, table_name: str) -> None:
        self.codec = KeyCodec(table_name)

    def storage_key(self, key: Any) -> str:
        return self.codec.encode(key)

    def whole(self) -> KeyRange:
        return KeyRange.bound(self.codec.before_first(), self.codec.after_last(), True, True)

    def since(self, key: Any) -> KeyRange:
        return KeyRange.bound(self.storage_key(key), self.codec.after_last(), False, True)

    def until(self, key: Any) -> KeyRange:
        return KeyRange.bound(self.codec.before_first(), self.storage_key(key), True, False)

    def between(self, start: Any, end: Any) -> KeyRange:
        return KeyRange.bound(self.storage_key(start), self.storage_key(end))


class DedicatedKeyspace:
    """Key ranges for a table that owns its container; keys are stored raw."""

    shared = False

    def storage_key(self, key: Any) -> Key:
        try:
            return validate_key(key)
        except EngineDataError as e:
            raise KeyEncodingError(str(e), key) from e

    def whole(self) -> Optional[KeyRange]:
        return None

    def since(self, key: Any) -> KeyRange:
        return KeyRange.lower_bound(self.storage_key(key))

    def until(self, key: Any) -> KeyRange:
        return KeyRange.upper_bound(self.storage_key(key))

    def between(self, start: Any, end: Any) -> KeyRange:
        return KeyRange.bound(self.storage_key(start), self.storage_key(end))


Keyspace = Union[SharedKeyspace, DedicatedKeyspace]
