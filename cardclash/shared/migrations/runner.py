"""Store schema migrations.

SQL files in ``versions/`` named ``NNN_description.sql`` are applied in
name order, each in its own transaction, and recorded in
``store_schema_versions``. The whole run holds a session advisory lock so
clients starting at the same time apply each file once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import asyncpg

logger = logging.getLogger(__name__)

VERSIONS_DIR = Path(__file__).resolve().parent / "versions"

# Distinct from the store's mutation lock.
_MIGRATION_LOCK_KEY = 7_431_001


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path

    @property
    def sql(self) -> str:
        return self.path.read_text(encoding="utf-8")


def discover(directory: Path = VERSIONS_DIR) -> list[Migration]:
    return [Migration(p.stem, p) for p in sorted(directory.glob("*.sql"))]


class MigrationRunner:
    TRACKING_TABLE = "store_schema_versions"

    def __init__(self, pool: asyncpg.Pool, directory: Path = VERSIONS_DIR) -> None:
        self.pool = pool
        self.directory = directory

    async def _ensure_table(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.TRACKING_TABLE} (
                version    TEXT PRIMARY KEY,
                applied_at TIMESTAMPTZ DEFAULT NOW()
            )
            """
        )

    async def _applied(self, conn: asyncpg.Connection) -> set[str]:
        rows = await conn.fetch(f"SELECT version FROM {self.TRACKING_TABLE}")  # noqa: S608
        return {row["version"] for row in rows}

    async def pending(self) -> list[Migration]:
        """Migrations not applied yet, without applying anything."""
        async with self.pool.acquire() as conn:
            await self._ensure_table(conn)
            applied = await self._applied(conn)
        return [m for m in discover(self.directory) if m.version not in applied]

    async def run_pending(self) -> list[str]:
        """Apply what is missing; returns the newly applied versions."""
        newly_applied: list[str] = []
        async with self.pool.acquire() as conn:
            await conn.execute("SELECT pg_advisory_lock($1)", _MIGRATION_LOCK_KEY)
            try:
                await self._ensure_table(conn)
                applied = await self._applied(conn)
                for migration in discover(self.directory):
                    if migration.version in applied:
                        continue
                    logger.info(f"Applying store migration {migration.version}")
                    async with conn.transaction():
                        await conn.execute(migration.sql)
                        await conn.execute(
                            f"INSERT INTO {self.TRACKING_TABLE} (version) VALUES ($1)",
                            migration.version,
                        )
                    newly_applied.append(migration.version)
            finally:
                await conn.execute("SELECT pg_advisory_unlock($1)", _MIGRATION_LOCK_KEY)

        if newly_applied:
            logger.info(f"Applied {len(newly_applied)} migration(s): {', '.join(newly_applied)}")
        else:
            logger.info("Store schema is up to date")
        return newly_applied
