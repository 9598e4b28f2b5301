"""Shared store on PostgreSQL with LISTEN/NOTIFY change push.

Storage: one ``store_nodes`` row per leaf (``path`` -> JSONB scalar).
Every mutation runs in a transaction holding one advisory lock, so
``increment`` and ``set_if_absent`` are atomic across clients, and ends
with ``NOTIFY store_changes`` carrying the changed paths.

Disconnect writes live in ``store_disconnect_writes`` tagged with the
backend pid of the client's LISTEN connection. Each client's keepalive
tick applies (and deletes) the writes whose pid has vanished from
``pg_stat_activity``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import asyncpg

from cardclash.core.errors import StoreError
from cardclash.shared.paths import split

from .base import ChangeCallback, SharedStore, Subscription
from .tree import flatten, normalize, touches, unflatten

LOGGER = logging.getLogger("PgStore")

CHANNEL = "store_changes"
# Single advisory lock key serializing all tree mutations.
_LOCK_KEY = 7_431_002

_NODE_FILTER = "path = $1 OR starts_with(path, $2)"

TxBody = Callable[[asyncpg.Connection], Awaitable[tuple[list[str], Any]]]


class PostgresStore(SharedStore):
    """Shared store client backed by an asyncpg pool."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        client_id: str | None = None,
        keepalive_interval: int = 30,
        reconnect_delay: int = 10,
    ) -> None:
        self.pool = pool
        self.client_id = client_id or uuid.uuid4().hex
        self.keepalive_interval = keepalive_interval
        self.reconnect_delay = reconnect_delay
        self._subscriptions: list[Subscription] = []
        self._listener: asyncpg.Connection | None = None
        self._listener_pid: int | None = None
        self._listener_task: asyncio.Task[None] | None = None
        self._ready = asyncio.Event()
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, timeout: float = 10.0) -> None:
        """Open the LISTEN connection; required before subscribing."""
        if self._listener_task is None:
            self._listener_task = asyncio.create_task(self._listen(), name="pg-store-listen")
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise StoreError("start", CHANNEL, e) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for sub in list(self._subscriptions):
            sub.cancel()
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    "DELETE FROM store_disconnect_writes WHERE client_id = $1", self.client_id
                )
        except (asyncpg.PostgresError, OSError) as e:
            LOGGER.warning(f"Could not discard disconnect writes for {self.client_id}: {e}")
        await self._stop_listener()

    async def disconnect(self) -> None:
        """Drop the LISTEN connection abruptly; peers apply our disconnect writes."""
        if self._closed:
            return
        self._closed = True
        for sub in list(self._subscriptions):
            sub.cancel()
        if self._listener is not None:
            self._listener.terminate()
        await self._stop_listener()

    async def _stop_listener(self) -> None:
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

    # ------------------------------------------------------------------
    # Reads and writes
    # ------------------------------------------------------------------

    async def get(self, path: str) -> Any:
        try:
            async with self.pool.acquire() as conn:
                return await self._read(conn, path)
        except asyncio.CancelledError:
            raise
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            raise StoreError("get", path, e) from e

    async def set(self, path: str, value: Any) -> None:
        if not split(path):
            raise StoreError("set", path, ValueError("empty path"))

        async def body(conn: asyncpg.Connection) -> tuple[list[str], Any]:
            await self._write(conn, path, value)
            return [path], None

        await self._transaction("set", path, body)

    async def update(self, path: str, changes: dict[str, Any]) -> None:
        writes = self._absolute(path, changes)

        async def body(conn: asyncpg.Connection) -> tuple[list[str], Any]:
            for target, value in writes:
                await self._write(conn, target, value)
            return [target for target, _ in writes], None

        await self._transaction("update", path, body)

    async def increment(self, path: str, delta: float) -> float:
        async def body(conn: asyncpg.Connection) -> tuple[list[str], Any]:
            current = await self._read(conn, path)
            if current is None:
                current = 0
            if isinstance(current, bool) or not isinstance(current, (int, float)):
                raise StoreError("increment", path, TypeError(f"not a number: {current!r}"))
            new_value = current + delta
            await self._write(conn, path, new_value)
            return [path], new_value

        return await self._transaction("increment", path, body)

    async def set_if_absent(self, path: str, value: Any) -> bool:
        async def body(conn: asyncpg.Connection) -> tuple[list[str], Any]:
            exists = await conn.fetchval(
                f"SELECT EXISTS (SELECT 1 FROM store_nodes WHERE {_NODE_FILTER})",
                path,
                path + "/",
            )
            if exists:
                return [], False
            await self._write(conn, path, value)
            return [path], True

        return await self._transaction("set_if_absent", path, body)

    async def _transaction(self, operation: str, path: str, body: TxBody) -> Any:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("SELECT pg_advisory_xact_lock($1)", _LOCK_KEY)
                    changed, result = await body(conn)
                    if changed:
                        # Delivered by PostgreSQL only when the transaction commits.
                        await conn.execute(
                            "SELECT pg_notify($1, $2)", CHANNEL, json.dumps(changed)
                        )
                    return result
        except asyncio.CancelledError:
            raise
        except StoreError:
            raise
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            raise StoreError(operation, path, e) from e

    @staticmethod
    async def _read(conn: asyncpg.Connection, path: str) -> Any:
        rows = await conn.fetch(
            f"SELECT path, value FROM store_nodes WHERE {_NODE_FILTER}", path, path + "/"
        )
        return unflatten(path, [(row["path"], json.loads(row["value"])) for row in rows])

    @staticmethod
    async def _write(conn: asyncpg.Connection, path: str, value: Any) -> None:
        parts = split(path)
        ancestors = ["/".join(parts[:i]) for i in range(1, len(parts))]
        await conn.execute(
            f"DELETE FROM store_nodes WHERE {_NODE_FILTER} OR path = ANY($3::text[])",
            path,
            path + "/",
            ancestors,
        )
        rows = flatten(path, value)
        if rows:
            await conn.executemany(
                "INSERT INTO store_nodes (path, value) VALUES ($1, $2::jsonb)",
                [(leaf, json.dumps(leaf_value)) for leaf, leaf_value in rows],
            )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, path: str, callback: ChangeCallback) -> Subscription:
        if self._closed:
            raise StoreError("subscribe", path, RuntimeError("store client is closed"))
        sub = Subscription(path, callback, lambda: self.get(path), on_cancel=self._forget)
        self._subscriptions.append(sub)
        return sub

    def _forget(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def _on_notify(
        self, connection: asyncpg.Connection, pid: int, channel: str, payload: str
    ) -> None:
        try:
            changed = json.loads(payload)
        except ValueError:
            LOGGER.warning(f"Ignoring malformed notification payload: {payload[:100]}")
            return
        for sub in list(self._subscriptions):
            if any(touches(path, sub.path) for path in changed):
                sub.notify()

    # ------------------------------------------------------------------
    # Disconnect writes
    # ------------------------------------------------------------------

    async def run_on_disconnect(self, path: str, value: Any = None) -> None:
        if self._listener_pid is None:
            raise StoreError("run_on_disconnect", path, RuntimeError("store not started"))
        stored = normalize(value)
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO store_disconnect_writes (client_id, path, value, backend_pid)
                    VALUES ($1, $2, $3::jsonb, $4)
                    ON CONFLICT (client_id, path) DO UPDATE SET
                        value = EXCLUDED.value,
                        backend_pid = EXCLUDED.backend_pid
                    """,
                    self.client_id,
                    path,
                    json.dumps(stored) if stored is not None else None,
                    self._listener_pid,
                )
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            raise StoreError("run_on_disconnect", path, e) from e

    async def cancel_on_disconnect(self, path: str) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    "DELETE FROM store_disconnect_writes WHERE client_id = $1 AND path = $2",
                    self.client_id,
                    path,
                )
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            raise StoreError("cancel_on_disconnect", path, e) from e

    async def sweep_disconnected(self) -> int:
        """Apply disconnect writes of clients whose connection is gone."""

        async def body(conn: asyncpg.Connection) -> tuple[list[str], Any]:
            rows = await conn.fetch(
                """
                DELETE FROM store_disconnect_writes d
                WHERE NOT EXISTS (
                    SELECT 1 FROM pg_stat_activity a WHERE a.pid = d.backend_pid
                )
                RETURNING client_id, path, value
                """
            )
            for row in rows:
                value = json.loads(row["value"]) if row["value"] is not None else None
                await self._write(conn, row["path"], value)
                LOGGER.info(f"Applied disconnect write for {row['client_id']} at {row['path']}")
            return [row["path"] for row in rows], len(rows)

        return await self._transaction("sweep", "store_disconnect_writes", body)

    # ------------------------------------------------------------------
    # LISTEN loop
    # ------------------------------------------------------------------

    async def _adopt_listener(self, connection: asyncpg.Connection) -> None:
        self._listener = connection
        self._listener_pid = connection.get_server_pid()
        async with self.pool.acquire() as conn:
            await conn.execute(
                "UPDATE store_disconnect_writes SET backend_pid = $1 WHERE client_id = $2",
                self._listener_pid,
                self.client_id,
            )
        self._ready.set()
        # Changes made while we were not listening are picked up by a reload.
        for sub in list(self._subscriptions):
            sub.notify()

    async def _release_listener(self, connection: asyncpg.Connection) -> None:
        try:
            await connection.remove_listener(CHANNEL, self._on_notify)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            LOGGER.debug(f"remove_listener failed: {e}")
        try:
            await self.pool.release(connection)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            LOGGER.debug(f"release failed, terminating listener connection: {e}")
            connection.terminate()
        self._listener = None

    async def _listen(self) -> None:
        """LISTEN on the change channel with keepalive, sweep and auto-reconnect."""
        while True:
            connection: asyncpg.Connection | None = None
            try:
                connection = await self.pool.acquire()
                await connection.add_listener(CHANNEL, self._on_notify)
                await self._adopt_listener(connection)
                LOGGER.info(f"PostgreSQL LISTEN active on '{CHANNEL}' (pid {self._listener_pid})")

                try:
                    while True:
                        try:
                            await self.sweep_disconnected()
                        except StoreError as e:
                            LOGGER.warning(f"Disconnect sweep failed: {e}")
                        await asyncio.sleep(self.keepalive_interval)
                        await connection.execute("SELECT 1")
                except asyncio.CancelledError:
                    LOGGER.info(f"PostgreSQL LISTEN '{CHANNEL}' shutting down...")
                    raise
                finally:
                    await self._release_listener(connection)
                    connection = None

            except asyncio.CancelledError:
                break
            except Exception as e:
                LOGGER.error(f"Error in store listener: {e}")
                LOGGER.warning(f"Reconnecting store listener in {self.reconnect_delay}s...")
                if connection is not None:
                    connection.terminate()
                    self._listener = None
                try:
                    await asyncio.sleep(self.reconnect_delay)
                except asyncio.CancelledError:
                    break
