"""
Integration tests for tables stored in SQLite files.

Tests cover:
- Pooled and dedicated layouts on disk
- Data surviving a new Database on a new engine instance
- Schema changes made by another process (another SqliteEngine)
"""

import pytest

from tabledb.connection import Database
from tabledb.engine.sqlite import SqliteEngine
from tabledb.errors import RangeQueryError, WriteBatchError


def _ids(rows):
    return [row["id"] for row in rows]


class TestSqliteTables:
    """Table operations on SqliteEngine."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pool_size", [4, 0], ids=["shared", "dedicated"])
    async def test_pagination(self, tmp_path, settings, pool_size):
        engine = SqliteEngine(str(tmp_path))
        db = await Database.open("app", engine, settings, container_pool_size=pool_size)
        events = await db.open_table("events", "id")
        await events.put([{"id": i, "body": {"n": i}} for i in range(1, 21)])

        assert _ids(await events.get_until_last(5)) == [16, 17, 18, 19, 20]
        assert _ids(await events.get_until(10, 3)) == [8, 9, 10]
        assert _ids(await events.get_since(18, 10)) == [18, 19, 20]
        assert (await events.get_first_row())["body"] == {"n": 1}
        await events.delete_between(2, 19)
        assert _ids(await events.get_all()) == [1, 20]
        db.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pool_size", [4, 0], ids=["shared", "dedicated"])
    async def test_data_survives_reopen(self, tmp_path, settings, pool_size):
        db = await Database.open(
            "app", SqliteEngine(str(tmp_path)), settings, container_pool_size=pool_size
        )
        users = await db.open_table("users", "email")
        await users.put([{"email": "b@example.com"}, {"email": "a@example.com"}])
        db.close()

        db = await Database.open(
            "app", SqliteEngine(str(tmp_path)), settings, container_pool_size=pool_size
        )
        users = await db.open_table("users", "email")
        assert [row["email"] for row in await users.get_all()] == [
            "a@example.com",
            "b@example.com",
        ]
        db.close()

    @pytest.mark.asyncio
    async def test_mixed_keys_in_shared_container(self, tmp_path, settings):
        db = await Database.open(
            "app", SqliteEngine(str(tmp_path)), settings, container_pool_size=1
        )
        a = await db.open_table("a", "id")
        ab = await db.open_table("ab", "id")
        await a.put([{"id": k} for k in ("x", 2, 10)])
        await ab.put([{"id": 1}])
        assert _ids(await a.get_all()) == [2, 10, "x"]
        assert await ab.count() == 1
        db.close()


    @pytest.mark.asyncio
    async def test_out_of_range_integer_keys(self, tmp_path, settings):
        """Keys beyond 64 bits fail their own row and their own query only."""
        db = await Database.open(
            "app", SqliteEngine(str(tmp_path)), settings, container_pool_size=0
        )
        events = await db.open_table("events", "id")
        with pytest.raises(WriteBatchError) as exc_info:
            await events.put([{"id": 1}, {"id": 2**70}, {"id": 3}])
        assert exc_info.value.failed == 1
        assert _ids(await events.get_all()) == [1, 3]

        with pytest.raises(RangeQueryError):
            await events.get_since(2**70, 5)
        assert db.is_open
        assert _ids(await events.get_since(2, 5)) == [3]
        db.close()


class TestSqliteCrossProcess:
    """Two engines on one directory behave like two processes."""

    @pytest.mark.asyncio
    async def test_version_bump_from_other_engine(self, tmp_path, settings, wait_until):
        """A stale Database fails one query, then resyncs to the new version."""
        first = await Database.open(
            "app", SqliteEngine(str(tmp_path)), settings, container_pool_size=0
        )
        events = await first.open_table("events", "id")
        await events.put([{"id": 1}, {"id": 2}])
        assert first.version == 2

        second = await Database.open(
            "app", SqliteEngine(str(tmp_path)), settings, container_pool_size=0
        )
        await second.open_table("audit", "id")
        assert second.version == 3

        with pytest.raises(RangeQueryError):
            await events.count()
        assert await wait_until(lambda: first.is_open and first.version == 3)
        assert await events.count() == 2
        assert first.table_names == {"events", "audit"}
        first.close()
        second.close()
