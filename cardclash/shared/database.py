"""PostgreSQL pool lifecycle for the shared store backend.

The store relies on LISTEN/NOTIFY, advisory locks and the backend pid of
a long-lived connection, so it needs session-level pooling: Supabase's
transaction pooler (port 6543) is refused up front.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import asyncpg

logger = logging.getLogger(__name__)

APPLICATION_NAME = "cardclash"


@dataclass
class PoolConfig:
    """Pool settings. Each store client pins one extra connection for LISTEN."""

    min_size: int = 2
    max_size: int = 6
    timeout: float = 5.0
    command_timeout: float = 15.0
    max_inactive_connection_lifetime: float = 60.0
    max_retries: int = 3
    retry_delay: float = 3.0


class DatabaseManager:
    """Creates, verifies and closes the asyncpg pool used by ``PostgresStore``."""

    def __init__(self, database_url: str, config: PoolConfig | None = None):
        if ":6543" in database_url:
            raise ValueError(
                "The shared store needs a session connection; "
                "transaction pooler URLs (port 6543) do not support LISTEN"
            )
        self.database_url = database_url
        self.config = config or PoolConfig()
        self._pool: asyncpg.Pool | None = None

    async def _init_connection(self, conn: asyncpg.Connection) -> None:
        timeout_ms = int(self.config.command_timeout * 1000)
        await conn.execute(f"SET statement_timeout = {timeout_ms}")

    async def connect(self) -> asyncpg.Pool:
        """Create the pool, retrying with exponential backoff."""
        if self._pool is not None:
            logger.warning("Database pool already initialized")
            return self._pool

        cfg = self.config
        attempt = 0
        while True:
            attempt += 1
            pool: asyncpg.Pool | None = None
            try:
                pool = await asyncpg.create_pool(
                    dsn=self.database_url,
                    min_size=cfg.min_size,
                    max_size=cfg.max_size,
                    timeout=cfg.timeout,
                    command_timeout=cfg.command_timeout,
                    max_inactive_connection_lifetime=cfg.max_inactive_connection_lifetime,
                    server_settings={"application_name": APPLICATION_NAME},
                    init=self._init_connection,
                )
                async with pool.acquire() as conn:
                    await conn.fetchval("SELECT 1")
            except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
                if pool is not None:
                    await pool.close()
                if attempt >= cfg.max_retries:
                    logger.exception(
                        f"Database connection failed after {cfg.max_retries} attempts: "
                        f"{type(e).__name__}: {e or repr(e)}"
                    )
                    raise
                delay = cfg.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Database connection attempt {attempt}/{cfg.max_retries} failed: "
                    f"{type(e).__name__}: {e or repr(e)}, retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                continue

            self._pool = pool
            logger.info(f"Database pool ready (size={cfg.min_size}-{cfg.max_size})")
            return pool

    async def disconnect(self) -> None:
        if self._pool is None:
            return
        await self._pool.close()
        self._pool = None
        logger.info("Database pool closed")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call connect() first.")
        return self._pool
