# app/infra/migrations_async.py
"""
SQL migrations for the dispatch schema.

Files under ``app/infra/sql`` are applied in name order, each in its own
transaction together with its ``schema_migrations`` row. An advisory lock
keeps two runners (e.g. two deploy jobs) from applying the same file.
"""
from __future__ import annotations
from pathlib import Path

from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Arbitrary constant shared by every migration runner
_MIGRATION_LOCK_KEY = 724_001

_CREATE_TRACKING_TABLE = """
    CREATE TABLE IF NOT EXISTS schema_migrations(
      version text PRIMARY KEY,
      applied_at timestamptz NOT NULL DEFAULT now()
    )
"""


def sql_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def migration_files() -> list[Path]:
    return sorted(p for p in sql_dir().glob("*.sql") if p.is_file())


async def applied_versions() -> set[str]:
    async with db_conn() as conn:
        await conn.execute(_CREATE_TRACKING_TABLE)
        rows = await conn.fetch("SELECT version FROM schema_migrations")
        return {row["version"] for row in rows}


async def pending_migrations() -> list[str]:
    done = await applied_versions()
    return [p.name for p in migration_files() if p.name not in done]


async def apply_migrations(dry_run: bool = False) -> dict:
    """
    Apply every pending migration.

    Returns:
        {"ok": bool, "applied": [filenames], "count": int, "dry_run": bool}
    """
    pending = await pending_migrations()
    if dry_run:
        logger.info(f"Dry run: {len(pending)} pending migration(s)")
        return {"ok": True, "applied": pending, "count": len(pending), "dry_run": True}

    applied_now: list[str] = []
    for path in migration_files():
        if path.name not in pending:
            continue

        async with db_conn(autocommit=False) as conn:
            await conn.execute("SELECT pg_advisory_xact_lock($1)", _MIGRATION_LOCK_KEY)
            already = await conn.fetchval(
                "SELECT 1 FROM schema_migrations WHERE version = $1", path.name
            )
            if already:
                logger.info(f"Migration {path.name} applied by another runner, skipping")
                continue

            logger.info(f"Applying migration: {path.name}")
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", path.name)

        applied_now.append(path.name)
        logger.info(f"Migration {path.name} applied")

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now), "dry_run": False}
