"""
Schema migration runner for the object store.

Applies forward-only SQL migrations from the migrations/ directory, each in
its own transaction. The checksum of every applied file is recorded so that
edits to an already-applied migration are reported instead of silently
ignored.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Dict, List, Tuple

import asyncpg

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+\.sql$")


def file_checksum(path: Path) -> str:
    """SHA-256 of a migration file's contents."""
    return hashlib.sha256(path.read_bytes()).hexdigest()


async def ensure_migration_table(conn: asyncpg.Connection) -> None:
    """Create the schema_migrations tracking table if it doesn't exist."""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version VARCHAR(16) PRIMARY KEY,
            filename VARCHAR(255) NOT NULL,
            checksum CHAR(64) NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """)


def discover_migrations(
    directory: Path = MIGRATIONS_DIR,
) -> List[Tuple[str, str, Path]]:
    """
    Discover migration files.

    Returns:
        Sorted list of (version, filename, path) tuples.

    Raises:
        FileNotFoundError: If the migrations directory doesn't exist.
    """
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    migrations = []
    for entry in sorted(directory.iterdir()):
        match = MIGRATION_PATTERN.match(entry.name)
        if match and entry.is_file():
            migrations.append((match.group(1), entry.name, entry))

    return migrations


async def get_applied_checksums(conn: asyncpg.Connection) -> Dict[str, str]:
    """Map of applied migration version to recorded checksum."""
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    return {row["version"]: row["checksum"] for row in rows}


async def apply_migration(
    pool: asyncpg.Pool, version: str, filename: str, path: Path
) -> None:
    """Apply a single migration and record it in the same transaction."""
    sql = path.read_text(encoding="utf-8")

    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, filename, checksum) "
                "VALUES ($1, $2, $3)",
                version,
                filename,
                file_checksum(path),
            )

    logger.info(f"Applied migration {filename}")


async def run_migrations(pool: asyncpg.Pool, directory: Path = MIGRATIONS_DIR) -> int:
    """
    Apply all pending migrations in order.

    Returns:
        Number of migrations applied.

    Raises:
        FileNotFoundError: If the migrations directory is missing.
        asyncpg.PostgresError: If a migration fails (it is rolled back;
            previously applied migrations remain).
    """
    async with pool.acquire() as conn:
        await ensure_migration_table(conn)
        applied = await get_applied_checksums(conn)

    all_migrations = discover_migrations(directory)
    pending = []
    for version, filename, path in all_migrations:
        recorded = applied.get(version)
        if recorded is None:
            pending.append((version, filename, path))
        elif recorded != file_checksum(path):
            logger.warning(
                f"Migration {filename} was modified after it was applied; "
                f"the change will not be re-applied"
            )

    if not pending:
        logger.info("Database schema is up to date")
        return 0

    logger.info(f"Applying {len(pending)} pending migration(s)")
    for version, filename, path in pending:
        await apply_migration(pool, version, filename, path)

    return len(pending)
