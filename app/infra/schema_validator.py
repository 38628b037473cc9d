# app/infra/schema_validator.py
"""
Schema version check at startup.

The application never migrates its own database. It refuses to start
unless the newest applied migration equals ``expected_schema_version``;
migrations are applied separately with ``python -m app.infra.migrate``.
"""
from __future__ import annotations
from app.config import settings
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_TRACKING_TABLE_EXISTS = "SELECT to_regclass('public.schema_migrations') IS NOT NULL"


async def validate_schema_version() -> dict:
    """
    Raise RuntimeError unless the schema is at the expected version.

    Returns:
        {"ok": True, "current_version": str, "expected_version": str}
    """
    async with db_conn() as conn:
        if not await conn.fetchval(_TRACKING_TABLE_EXISTS):
            error = "Database has not been initialized. Run: python -m app.infra.migrate"
            logger.critical(error)
            raise RuntimeError(error)

        latest = await conn.fetchrow(
            "SELECT version, applied_at FROM schema_migrations ORDER BY version DESC LIMIT 1"
        )

    if latest is None:
        error = "No migrations have been applied. Run: python -m app.infra.migrate"
        logger.critical(error)
        raise RuntimeError(error)

    current = latest["version"]
    expected = settings.expected_schema_version
    if current != expected:
        error = f"Schema version mismatch: expected {expected}, found {current}. Run: python -m app.infra.migrate"
        logger.critical(error, extra={"expected": expected, "current": current})
        raise RuntimeError(error)

    return {"ok": True, "current_version": current, "expected_version": expected}


async def get_schema_info() -> dict:
    """Schema state for the migrate CLI and diagnostics."""
    async with db_conn() as conn:
        if not await conn.fetchval(_TRACKING_TABLE_EXISTS):
            return {"initialized": False, "migrations_applied": 0, "latest_version": None, "is_compatible": False}

        rows = await conn.fetch("SELECT version, applied_at FROM schema_migrations ORDER BY version")

    versions = [row["version"] for row in rows]
    latest = versions[-1] if versions else None
    return {
        "initialized": True,
        "migrations_applied": len(versions),
        "latest_version": latest,
        "expected_version": settings.expected_schema_version,
        "is_compatible": latest == settings.expected_schema_version,
    }
