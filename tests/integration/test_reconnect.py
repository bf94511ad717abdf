"""
Integration tests for transparent reconnection.

These tests drive a Database through engine-initiated closures, aborts,
errors, outages and schema changes made by other Database objects on the
same engine, and check that table operations keep working afterwards.
"""

import asyncio

import pytest

from tabledb.connection import ConnectionState, Database
from tabledb.engine.memory import MemoryEngine
from tabledb.errors import DatabaseClosedError, RangeQueryError, WriteBatchError


async def _open_with_rows(engine, settings, pool_size=4):
    db = await Database.open("app", engine, settings, container_pool_size=pool_size)
    events = await db.open_table("events", "id")
    await events.put([{"id": i} for i in range(1, 6)])
    return db, events


def _ids(rows):
    return [row["id"] for row in rows]


class FlakyEngine(MemoryEngine):
    """MemoryEngine whose next opens fail with an OS-level error."""

    def __init__(self):
        super().__init__()
        self.os_errors = 0

    async def open(self, name, version=None, on_upgrade=None):
        if self.os_errors:
            self.os_errors -= 1
            raise OSError("transient I/O failure")
        return await super().open(name, version, on_upgrade)


class TestReconnect:
    """Dropped handles are replaced without surfacing errors."""

    @pytest.mark.asyncio
    async def test_operation_after_engine_close(self, engine, settings):
        """The next operation after a closure waits for the reopen and succeeds."""
        db, events = await _open_with_rows(engine, settings)
        engine.simulate_close("app")
        await asyncio.sleep(0)
        assert db.state is ConnectionState.RECONNECTING

        assert await events.count() == 5
        assert db.state is ConnectionState.OPEN
        assert db.reopen_count == 1
        assert engine.upgrade_count("app") == 1
        assert engine.open_handle_count("app") == 1
        db.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signal", ["simulate_abort", "simulate_error"])
    async def test_abort_and_error_reopen(self, engine, settings, signal):
        db, events = await _open_with_rows(engine, settings)
        getattr(engine, signal)("app")
        await asyncio.sleep(0)
        assert db.state is ConnectionState.RECONNECTING
        assert _ids(await events.get_until_last(2)) == [4, 5]
        assert db.reopen_count == 1
        assert engine.open_handle_count("app") == 1
        db.close()

    @pytest.mark.asyncio
    async def test_waits_through_outage(self, engine, settings):
        """Operations issued while the engine is down complete once it is back."""
        db, events = await _open_with_rows(engine, settings)
        engine.set_available(False)
        engine.simulate_close("app")
        await asyncio.sleep(0)

        pending = asyncio.create_task(events.get_since_first(10))
        await asyncio.sleep(0.05)
        assert not pending.done()
        assert db.state is ConnectionState.RECONNECTING

        engine.set_available(True)
        rows = await asyncio.wait_for(pending, timeout=2.0)
        assert _ids(rows) == [1, 2, 3, 4, 5]
        assert db.reopen_count == 1
        db.close()

    @pytest.mark.asyncio
    async def test_failed_reopens_are_retried(self, engine, settings):
        db, events = await _open_with_rows(engine, settings)
        engine.fail_next_opens(3)
        engine.simulate_close("app")
        await asyncio.sleep(0)
        assert await events.count() == 5
        assert db.reopen_count == 1
        db.close()

    @pytest.mark.asyncio
    async def test_unexpected_open_error_is_retried(self, settings):
        """An open that fails outside the engine error hierarchy is retried."""
        engine = FlakyEngine()
        db, events = await _open_with_rows(engine, settings)
        engine.os_errors = 1
        engine.simulate_close("app")
        await asyncio.sleep(0)

        assert await asyncio.wait_for(events.count(), timeout=2.0) == 5
        assert engine.os_errors == 0
        assert db.reopen_count == 1
        db.close()

    @pytest.mark.asyncio
    async def test_close_during_put(self, engine, settings):
        """A put cut off by an engine closure writes nothing; the next call reopens."""
        db, events = await _open_with_rows(engine, settings)
        pending = asyncio.create_task(events.put([{"id": i} for i in range(100, 110)]))
        await asyncio.sleep(0)
        assert not pending.done()
        engine.simulate_close("app")

        with pytest.raises(WriteBatchError) as exc_info:
            await pending
        assert exc_info.value.failed == exc_info.value.total == 10
        assert await events.count() == 5
        assert _ids(await events.get_all()) == [1, 2, 3, 4, 5]
        assert db.state is ConnectionState.OPEN
        assert db.reopen_count == 1
        assert engine.upgrade_count("app") == 1
        db.close()

    @pytest.mark.asyncio
    async def test_close_during_read(self, engine, settings):
        db, events = await _open_with_rows(engine, settings)
        pending = asyncio.create_task(events.get_until(4, 2))
        await asyncio.sleep(0)
        engine.simulate_close("app")

        with pytest.raises(RangeQueryError):
            await pending
        assert _ids(await events.get_until(4, 2)) == [3, 4]
        assert db.reopen_count == 1
        db.close()

    @pytest.mark.asyncio
    async def test_close_during_reconnect(self, engine, settings):
        """close() stops the reopen loop for good."""
        db, events = await _open_with_rows(engine, settings)
        engine.set_available(False)
        engine.simulate_close("app")
        await asyncio.sleep(0.03)

        db.close()
        engine.set_available(True)
        await asyncio.sleep(0.05)
        assert db.state is ConnectionState.CLOSED
        assert not db.is_open
        assert db.reopen_count == 0
        assert engine.open_handle_count("app") == 0

    @pytest.mark.asyncio
    async def test_waiting_operation_fails_on_close(self, engine, settings):
        db, events = await _open_with_rows(engine, settings)
        engine.set_available(False)
        engine.simulate_close("app")
        await asyncio.sleep(0)

        pending = asyncio.create_task(events.count())
        await asyncio.sleep(0.02)
        db.close()
        with pytest.raises(DatabaseClosedError):
            await pending


class TestSchemaChangesAcrossDatabases:
    """Several Database objects on one engine, like tabs sharing a browser profile."""

    @pytest.mark.asyncio
    async def test_other_database_follows_version_bump(self, engine, settings, wait_until):
        first = await Database.open("app", engine, settings, container_pool_size=0)
        second = await Database.open("app", engine, settings, container_pool_size=0)

        events = await first.open_table("events", "id")
        assert first.version == 2
        assert await wait_until(lambda: second.is_open and second.version == 2)
        assert second.table_names == {"events"}

        await events.put([{"id": 1}, {"id": 2}])
        mirror = await second.open_table("events", "id")
        assert second.version == 2
        assert await mirror.count() == 2
        first.close()
        second.close()

    @pytest.mark.asyncio
    async def test_both_databases_add_tables(self, engine, settings, wait_until):
        first = await Database.open("app", engine, settings, container_pool_size=0)
        second = await Database.open("app", engine, settings, container_pool_size=0)

        await first.open_table("a", "id")
        await second.open_table("b", "id")
        assert second.version == 3
        assert await wait_until(lambda: first.is_open and first.version == 3)
        assert first.table_names == {"a", "b"}
        first.close()
        second.close()

    @pytest.mark.asyncio
    async def test_concurrent_open_table_calls(self, engine, settings):
        """Schema changes from one Database are serialised."""
        db = await Database.open("app", engine, settings, container_pool_size=0)
        a, b = await asyncio.gather(db.open_table("a", "id"), db.open_table("b", "id"))
        assert db.version == 3
        assert db.table_names == {"a", "b"}
        await a.put([{"id": 1}])
        await b.put([{"id": 2}])
        assert await a.get_all() == [{"id": 1}]
        assert await b.get_all() == [{"id": 2}]
        db.close()

    @pytest.mark.asyncio
    async def test_destroyed_elsewhere(self, engine, settings):
        db, events = await _open_with_rows(engine, settings)
        await Database.destroy("app", engine)
        assert db.state is ConnectionState.DETACHED
        await asyncio.sleep(0.05)
        assert db.state is ConnectionState.DETACHED
        assert db.reopen_count == 0
        db.close()

