#!/usr/bin/env python3
"""
Database Migration — Create/verify the dispatch tables from SQLAlchemy models.

Usage:
    python scripts/migrate_db.py                    # create missing tables
    python scripts/migrate_db.py --check            # report only, no changes
    python scripts/migrate_db.py --config prod.yaml
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text  # noqa: E402

_LIST_TABLES = {
    "postgresql": "SELECT tablename FROM pg_tables WHERE schemaname = 'public'",
    "mysql": "SHOW TABLES",
    "sqlite": "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'",
}


async def existing_tables(database) -> list[str]:
    async with database.engine.connect() as conn:
        result = await conn.execute(text(_LIST_TABLES.get(database.dialect, _LIST_TABLES["sqlite"])))
        return [row[0] for row in result.fetchall()]


async def run_migration(config_path: str = None, check_only: bool = False) -> int:
    from config.settings import load_settings
    from database.models import Base
    from database.session import Database

    settings = load_settings(config_path)
    database = Database(settings.database.url)
    defined = set(Base.metadata.tables.keys())

    try:
        print(f"Database: {database.dialect}")
        print(f"Tables defined: {', '.join(sorted(defined))}")

        if not check_only:
            print("Running database migration...")
            await database.init()

        existing = await existing_tables(database)
        print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")

        missing = defined - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
            return 1
        print("All tables exist.")
        return 0
    finally:
        await database.close()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(args.config, check_only=args.check)))


if __name__ == "__main__":
    main()
