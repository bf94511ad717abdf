"""
Unit tests for key encoding and container selection.

Tests cover:
- Encoded key layout and sentinels
- Decoding
- Ordering of encoded keys
- Isolation of tables sharing a container
- Container selection
"""

import pytest

from tabledb.engine.base import sort_key
from tabledb.errors import InvalidTableNameError, KeyEncodingError
from tabledb.keys import (
    MAX_INTEGER_KEY,
    DedicatedKeyspace,
    KeyCodec,
    SharedKeyspace,
    container_name,
    decode,
    select_container,
    validate_table_name,
)

TABLE_NAMES = ["a", "ab", "a0", "a_", "b", "events", "events2", "Événements", "t-1"]
KEYS = [0, 1, 9, 10, 42, 999, 123456, MAX_INTEGER_KEY - 1, "", "0", "a", "abc", "z^z", "ключ"]


class TestKeyCodec:
    """Tests for KeyCodec."""

    def test_integer_key_layout(self):
        """Integers are tagged and zero padded."""
        assert KeyCodec("events").encode(5) == "events^1^n000000005"

    def test_string_key_layout(self):
        """Strings are tagged and stored verbatim."""
        assert KeyCodec("events").encode("abc") == "events^1^sabc"

    def test_sentinels(self):
        """Sentinels use markers 0 and 2 without payload."""
        codec = KeyCodec("events")
        assert codec.before_first() == "events^0"
        assert codec.after_last() == "events^2"

    def test_keys_sort_between_sentinels(self):
        """Every row key sorts strictly between its table's sentinels."""
        for name in TABLE_NAMES:
            codec = KeyCodec(name)
            for key in KEYS:
                assert codec.before_first() < codec.encode(key) < codec.after_last()

    def test_integer_order_preserved(self):
        """Encoded integers sort numerically."""
        codec = KeyCodec("t")
        ints = [100, 2, 10, 1, 0, 99999]
        assert sorted(codec.encode(k) for k in ints) == [codec.encode(k) for k in sorted(ints)]

    def test_numbers_sort_before_strings(self):
        """Encoded numbers sort before encoded strings, like engine keys."""
        codec = KeyCodec("t")
        assert codec.encode(MAX_INTEGER_KEY - 1) < codec.encode("")
        assert sort_key(MAX_INTEGER_KEY - 1) < sort_key("")

    @pytest.mark.parametrize("key", [-1, MAX_INTEGER_KEY, True, 1.5, None, b"x", (1,)])
    def test_invalid_keys_rejected(self, key):
        """Keys outside the encodable domain raise KeyEncodingError."""
        with pytest.raises(KeyEncodingError):
            KeyCodec("t").encode(key)

    def test_key_encoding_error_is_value_error(self):
        """Caller mistakes are ValueErrors."""
        with pytest.raises(ValueError):
            KeyCodec("t").encode(-5)


class TestDecode:
    """Tests for decode()."""

    def test_round_trip(self):
        """decode(encode(name, key)) returns name and key."""
        for name in TABLE_NAMES:
            codec = KeyCodec(name)
            for key in KEYS:
                assert decode(codec.encode(key)) == (name, key)

    def test_integer_and_digit_string_stay_distinct(self):
        """The int 5 and the string '000000005' decode differently."""
        codec = KeyCodec("t")
        assert decode(codec.encode(5)) == ("t", 5)
        assert decode(codec.encode("000000005")) == ("t", "000000005")

    @pytest.mark.parametrize(
        "encoded",
        ["events^0", "events^2", "events", "^1^sabc", "events^1^", "events^1^x1", "events^1^n12", 42],
    )
    def test_rejects_non_row_keys(self, encoded):
        """Sentinels and malformed strings are not row keys."""
        with pytest.raises(KeyEncodingError):
            decode(encoded)


class TestTableIsolation:
    """Tables sharing a container never overlap."""

    def test_no_key_inside_other_tables_interval(self):
        """No key of one table falls inside another table's sentinel interval."""
        for name in TABLE_NAMES:
            for other in TABLE_NAMES:
                if name == other:
                    continue
                lo, hi = KeyCodec(other).before_first(), KeyCodec(other).after_last()
                for key in KEYS:
                    encoded = KeyCodec(name).encode(key)
                    assert not (lo <= encoded <= hi)

    @pytest.mark.parametrize("name", ["", "a^b", "^", None, 5])
    def test_invalid_table_names(self, name):
        """Empty names, non-strings and names with the separator are rejected."""
        with pytest.raises(InvalidTableNameError):
            validate_table_name(name)


class TestSelectContainer:
    """Tests for select_container()."""

    def test_deterministic(self):
        """Same name, same container."""
        assert select_container("events", 64) == select_container("events", 64)

    def test_within_pool(self):
        """Index is always inside the pool."""
        for i in range(200):
            assert 0 <= select_container(f"table_{i}", 7) < 7

    def test_spreads_tables(self):
        """Many tables use more than one container."""
        indexes = {select_container(f"table_{i}", 8) for i in range(100)}
        assert len(indexes) > 1

    def test_single_container_pool(self):
        """A pool of one hosts every table."""
        assert {select_container(n, 1) for n in TABLE_NAMES} == {0}

    def test_rejects_empty_pool(self):
        """Pool size must be positive."""
        with pytest.raises(ValueError):
            select_container("events", 0)

    def test_container_name(self):
        """Pool containers are named after the database."""
        assert container_name("app", 3) == "app_3"


class TestKeyspaces:
    """Tests for SharedKeyspace and DedicatedKeyspace ranges."""

    def test_shared_since_excludes_after_last(self):
        """since() is closed at the key and open at the after-last sentinel."""
        ks = SharedKeyspace("t")
        r = ks.since(3)
        assert r.includes(ks.storage_key(3))
        assert r.includes(ks.storage_key("zzz"))
        assert not r.includes(ks.storage_key(2))
        assert not r.includes("t^2")

    def test_shared_until_excludes_before_first(self):
        """until() is open at the before-first sentinel and closed at the key."""
        ks = SharedKeyspace("t")
        r = ks.until(3)
        assert r.includes(ks.storage_key(0))
        assert r.includes(ks.storage_key(3))
        assert not r.includes(ks.storage_key(4))
        assert not r.includes("t^0")

    def test_shared_whole_excludes_other_tables(self):
        """whole() covers this table only."""
        r = SharedKeyspace("t").whole()
        assert r.includes(SharedKeyspace("t").storage_key("x"))
        assert not r.includes(SharedKeyspace("t0").storage_key("x"))
        assert not r.includes(SharedKeyspace("s").storage_key("x"))

    def test_dedicated_ranges_use_raw_keys(self):
        """Dedicated ranges are plain bounds; whole() is unbounded."""
        ks = DedicatedKeyspace()
        assert ks.whole() is None
        assert ks.since(3).lower == 3
        assert ks.until("m").upper == "m"
        assert ks.between(1, 2).includes(2)

    def test_dedicated_rejects_invalid_keys(self):
        """Non-key values raise KeyEncodingError."""
        with pytest.raises(KeyEncodingError):
            DedicatedKeyspace().storage_key(None)
