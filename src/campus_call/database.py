"""Connection pool and schema migrations.

Migrations are ``migrations/NNN_name.sql`` files applied in version order,
each in its own transaction. ``schema_migrations`` keeps the version, the
file name and a SHA-256 of the SQL, so a file edited after it was applied is
reported rather than silently skipped. A session advisory lock serialises
concurrent ``migrate`` runs against the same database.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import re
from pathlib import Path

import asyncpg

logger = logging.getLogger(__name__)

_MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"
_FILENAME_RE = re.compile(r"^(\d+)_.*\.sql$")
_LOCK_KEY = 7_202_611  # advisory lock id shared by every migrate run


class MigrationError(Exception):
    pass


@dataclasses.dataclass(frozen=True)
class Migration:
    version: int
    path: Path
    sql: str

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode()).hexdigest()

    @property
    def blank(self) -> bool:
        """True when the file holds nothing but comments and whitespace."""
        return all(
            not line.strip() or line.strip().startswith("--")
            for line in self.sql.splitlines()
        )


async def create_pool(database_url: str, *, max_size: int = 10) -> asyncpg.Pool:
    pool = await asyncpg.create_pool(
        database_url,
        min_size=1,
        max_size=max_size,
        server_settings={"application_name": "campus-call"},
    )
    assert pool is not None
    return pool


def load_migrations(directory: Path = _MIGRATIONS_DIR) -> list[Migration]:
    """Read every numbered migration in *directory*, ordered by version."""
    found: dict[int, Migration] = {}
    for path in sorted(directory.glob("*.sql")):
        m = _FILENAME_RE.match(path.name)
        if m is None:
            logger.debug("Skipping %s: not a numbered migration", path.name)
            continue
        version = int(m.group(1))
        if version in found:
            raise MigrationError(
                f"version {version} used by {found[version].name} and {path.name}"
            )
        found[version] = Migration(version, path, path.read_text().strip())
    return [found[v] for v in sorted(found)]


async def _ensure_migrations_table(conn: asyncpg.Connection) -> None:
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version     INTEGER PRIMARY KEY,
            applied_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
            filename    TEXT NOT NULL,
            checksum    TEXT
        )
    """)
    await conn.execute(
        "ALTER TABLE schema_migrations ADD COLUMN IF NOT EXISTS checksum TEXT"
    )


async def _applied_checksums(conn: asyncpg.Connection) -> dict[int, str | None]:
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    return {r["version"]: r["checksum"] for r in rows}


async def _apply(conn: asyncpg.Connection, migration: Migration) -> None:
    async with conn.transaction():
        await conn.execute(migration.sql)
        await conn.execute(
            "INSERT INTO schema_migrations (version, filename, checksum)"
            " VALUES ($1, $2, $3)",
            migration.version,
            migration.name,
            migration.checksum,
        )


async def run_migrations(
    pool: asyncpg.Pool, directory: Path = _MIGRATIONS_DIR
) -> int:
    """Apply pending migrations and return the number applied."""
    migrations = load_migrations(directory)
    count = 0
    async with pool.acquire() as conn:
        await conn.execute("SELECT pg_advisory_lock($1)", _LOCK_KEY)
        try:
            await _ensure_migrations_table(conn)
            applied = await _applied_checksums(conn)
            for migration in migrations:
                if migration.version in applied:
                    recorded = applied[migration.version]
                    if recorded is not None and recorded != migration.checksum:
                        logger.warning(
                            "Migration %s changed after it was applied", migration.name
                        )
                    continue
                if migration.blank:
                    logger.debug("Skipping empty migration %s", migration.name)
                    continue
                await _apply(conn, migration)
                logger.info("Applied migration %s", migration.name)
                count += 1
        finally:
            await conn.execute("SELECT pg_advisory_unlock($1)", _LOCK_KEY)

    if count:
        logger.info("Applied %d migration(s)", count)
    else:
        logger.info("No pending migrations")
    return count
