"""
Schema migrations for the operator database.

Forward-only: every ``NNN_description.sql`` file in ``migrations/`` is
applied once, in version order, each inside its own transaction.
"""

import logging
import re
from pathlib import Path
from typing import List, NamedTuple, Optional, Set

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")

MIGRATION_TABLE_DDL = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version VARCHAR(16) PRIMARY KEY,
        filename VARCHAR(255) NOT NULL,
        applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
"""


class Migration(NamedTuple):
    version: str
    filename: str
    path: Path


def discover_migrations(directory: Optional[Path] = None) -> List[Migration]:
    """
    List migration files sorted by version.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    directory = directory or MIGRATIONS_DIR
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    found = []
    for entry in directory.iterdir():
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            found.append(Migration(match.group(1), entry.name, entry))
    return sorted(found)


async def applied_versions(conn: asyncpg.Connection) -> Set[str]:
    await conn.execute(MIGRATION_TABLE_DDL)
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


async def apply_migration(pool: asyncpg.Pool, migration: Migration) -> None:
    """Run one migration and record it, atomically."""
    sql = migration.path.read_text(encoding="utf-8")

    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, filename) VALUES ($1, $2)",
                migration.version,
                migration.filename,
            )

    logger.info(f"Applied migration {migration.filename}")


async def run_migrations(pool: asyncpg.Pool) -> int:
    """
    Apply all pending migrations.

    Returns:
        Number of migrations applied.

    Raises:
        asyncpg.PostgresError: If a migration fails. It is rolled back and
            earlier migrations stay applied.
    """
    async with pool.acquire() as conn:
        applied = await applied_versions(conn)

    pending = [m for m in discover_migrations() if m.version not in applied]
    if not pending:
        logger.info("Database schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for migration in pending:
        await apply_migration(pool, migration)
    return len(pending)
