"""PostgresStore against a real database.

Runs only when CARDCLASH_TEST_DATABASE_URL points at a PostgreSQL server
the tests may write to; every test works under its own root path.
"""

import asyncio
import os
import uuid

import pytest

from cardclash.shared.database import DatabaseManager, PoolConfig
from cardclash.shared.migrations.runner import MigrationRunner
from cardclash.shared.store.postgres import PostgresStore

from .conftest import wait_for

DATABASE_URL = os.environ.get("CARDCLASH_TEST_DATABASE_URL", "")

pytestmark = pytest.mark.skipif(not DATABASE_URL, reason="CARDCLASH_TEST_DATABASE_URL not set")


@pytest.fixture()
async def pool():
    db = DatabaseManager(DATABASE_URL, PoolConfig(max_size=8, max_retries=1))
    pool = await db.connect()
    await MigrationRunner(pool).run_pending()
    yield pool
    await db.disconnect()


@pytest.fixture()
async def root(pool):
    prefix = f"test-{uuid.uuid4().hex}"
    yield prefix
    async with pool.acquire() as conn:
        await conn.execute("DELETE FROM store_nodes WHERE starts_with(path, $1)", prefix + "/")


@pytest.fixture()
async def pg_stores(pool):
    clients = [PostgresStore(pool, keepalive_interval=1, reconnect_delay=1) for _ in range(2)]
    for client in clients:
        await client.start()
    yield clients
    for client in clients:
        await client.close()


async def test_increment_is_atomic_across_clients(pg_stores, root):
    alice, bob = pg_stores
    await asyncio.gather(
        *(client.increment(f"{root}/counter", 0.5) for client in (alice, bob) for _ in range(10))
    )
    assert await bob.get(f"{root}/counter") == 10


async def test_set_if_absent_has_single_winner(pg_stores, root):
    alice, bob = pg_stores
    results = await asyncio.gather(
        alice.set_if_absent(f"{root}/claim", "alice"),
        bob.set_if_absent(f"{root}/claim", "bob"),
    )
    assert sorted(results) == [False, True]
    assert await alice.get(f"{root}/claim") in ("alice", "bob")


async def test_update_is_seen_by_a_peer_subscription(pg_stores, root):
    alice, bob = pg_stores
    seen = []

    async def on_change(value):
        seen.append(value)

    sub = alice.subscribe(f"{root}/room", on_change)
    await wait_for(lambda: seen == [None])
    await bob.update(f"{root}/room", {"players/bob/score": 1, "gameState/currentRound": 2})

    expected = {"players": {"bob": {"score": 1}}, "gameState": {"currentRound": 2}}
    await wait_for(lambda: seen[-1] == expected)
    sub.cancel()


async def test_disconnect_writes_are_applied_by_a_peer(pool, root):
    leaving = PostgresStore(pool, keepalive_interval=1)
    staying = PostgresStore(pool, keepalive_interval=1)
    await leaving.start()
    await staying.start()
    path = f"{root}/players/alice"
    await leaving.set(path, {"displayName": "Alice"})
    await leaving.run_on_disconnect(path)

    await leaving.disconnect()
    for _ in range(50):
        if await staying.get(path) is None:
            break
        await staying.sweep_disconnected()
        await asyncio.sleep(0.1)

    assert await staying.get(path) is None
    await staying.close()


async def test_graceful_close_discards_disconnect_writes(pool, root):
    leaving = PostgresStore(pool, keepalive_interval=1)
    staying = PostgresStore(pool, keepalive_interval=1)
    await leaving.start()
    await staying.start()
    path = f"{root}/players/bob"
    await leaving.set(path, {"displayName": "Bob"})
    await leaving.run_on_disconnect(path)

    await leaving.close()
    await staying.sweep_disconnected()

    assert await staying.get(path) == {"displayName": "Bob"}
    await staying.close()
