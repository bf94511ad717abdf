#!/usr/bin/env python3
"""
tabledb Demo - Shows puts, pagination and reconnection.

Runs against SQLite files in a temporary directory, then against the
in-memory engine to show a dropped connection being reopened.
"""

import asyncio
import tempfile

from tabledb import Database, MemoryEngine, SqliteEngine, TableDbSettings, WriteBatchError


async def main():
    print("=" * 60)
    print("tabledb Demo - Tables, Pagination and Reconnection")
    print("=" * 60)
    print()

    settings = TableDbSettings(reopen_delay_ms=50, container_pool_size=8)

    with tempfile.TemporaryDirectory() as data_dir:
        print(f"[Setup] Using data directory: {data_dir}")

        # 1. Open the database
        print("\n[Step 1] Opening database 'demo'...")
        db = await Database.open("demo", SqliteEngine(data_dir), settings)
        print(f"  - Version: {db.version}")
        print(f"  - Shared containers: {settings.container_pool_size}")

        # 2. Tables
        print("\n[Step 2] Opening tables...")
        events = await db.open_table("events", "id")
        users = await db.open_table("users", "email")
        print(f"  - events -> {db._layout_for('events')[0]}")
        print(f"  - users  -> {db._layout_for('users')[0]}")

        # 3. Writes
        print("\n[Step 3] Writing rows...")
        await events.put([{"id": i, "kind": "login" if i % 3 else "logout"} for i in range(1, 26)])
        await users.put(
            [
                {"email": "carol@example.com", "name": "Carol"},
                {"email": "alice@example.com", "name": "Alice"},
                {"email": "bob@example.com", "name": "Bob"},
            ]
        )
        print(f"  - events: {await events.count()} rows")
        print(f"  - users:  {await users.count()} rows")

        # 4. Partial failures
        print("\n[Step 4] Writing a batch with a bad row...")
        try:
            await users.put([{"email": "dave@example.com"}, {"name": "no email"}])
        except WriteBatchError as e:
            print(f"  - {e.message}")
        print(f"  - users now: {await users.count()} rows")

        # 5. Forward pages
        print("\n[Step 5] Paging forward through events (page size 10)...")
        print("-" * 50)
        page = await events.get_since_first(10)
        while page:
            print(f"  {[row['id'] for row in page]}")
            page = await events.get_since(page[-1]["id"] + 1, 10)
        print()

        # 6. Backward pages
        print("[Step 6] Paging backward through events (page size 10)...")
        print("-" * 50)
        page = await events.get_until_last(10)
        while page:
            print(f"  {[row['id'] for row in page]}")
            if page[0]["id"] == 1:
                break
            page = await events.get_until(page[0]["id"] - 1, 10)
        print()

        # 7. Ranges and edges
        print("[Step 7] Ranges and edge rows...")
        print("-" * 50)
        print(f"  events 5..8:   {[row['id'] for row in await events.get_between(5, 8, 10)]}")
        print(f"  first user:    {(await users.get_first_row())['name']}")
        print(f"  last user:     {(await users.get_last_row())['name']}")
        await events.delete_since(21)
        print(f"  after delete_since(21): {await events.count()} events")
        print()

        db.close()

    # 8. Reconnection
    print("[Step 8] Dropping the connection (in-memory engine)...")
    print("-" * 50)
    engine = MemoryEngine()
    async with await Database.open("demo", engine, settings) as db:
        notes = await db.open_table("notes", "id")
        await notes.put([{"id": 1, "text": "before"}])
        engine.simulate_close("demo", reason="storage evicted")
        await asyncio.sleep(0)
        print(f"  - State after close signal: {db.state.value}")
        await notes.put([{"id": 2, "text": "after"}])
        print(f"  - State after next put:     {db.state.value}")
        print(f"  - Reopens: {db.reopen_count}, rows: {await notes.count()}")
    print()

    print("=" * 60)
    print("Demo Complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
