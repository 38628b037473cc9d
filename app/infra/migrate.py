# app/infra/migrate.py
"""
Standalone migration runner.

    python -m app.infra.migrate            # apply pending migrations
    python -m app.infra.migrate --dry-run  # list what would be applied
    python -m app.infra.migrate --status   # show applied / expected version

Run it before starting the application (CI/CD step, init container, or by
hand). The application only validates the schema version at startup.
"""
from __future__ import annotations

import argparse
import asyncio
import sys

from app.config import settings
from app.infra.db_async import close_pool, init_pool
from app.infra.logging_config import get_logger, setup_logging
from app.infra.migrations_async import apply_migrations
from app.infra.schema_validator import get_schema_info

setup_logging(level="INFO", use_json=False)
logger = get_logger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply cleaner-dispatch SQL migrations")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--dry-run", action="store_true", help="list pending migrations without applying them")
    group.add_argument("--status", action="store_true", help="show schema status and exit")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logger.info(f"Migration runner: env={settings.app_env}, db={settings.pghost}:{settings.pgport}/{settings.pgdatabase}")

    await init_pool()
    try:
        if args.status:
            info = await get_schema_info()
            logger.info(
                f"Schema: initialized={info['initialized']}, latest={info['latest_version']}, "
                f"expected={settings.expected_schema_version}"
            )
            return 0 if info.get("is_compatible") else 1

        result = await apply_migrations(dry_run=args.dry_run)
        verb = "Pending" if result["dry_run"] else "Applied"
        if result["applied"]:
            for name in result["applied"]:
                logger.info(f"  {verb}: {name}")
        else:
            logger.info("No new migrations to apply")
        return 0 if result["ok"] else 1

    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
