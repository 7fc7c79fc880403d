#!/usr/bin/env python3
"""
Database Migration — Create tables for reminders, sessions and business records.

Usage:
    # Create missing tables:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

    # Another database than the configured one:
    python scripts/migrate_db.py --url sqlite:///./other.db
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def existing_tables(db) -> list[str]:
    from sqlalchemy import inspect

    async with db.engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def run_migration(check_only: bool = False, url: str = "") -> int:
    from config.settings import load_settings
    settings = load_settings()

    from database.models import Base
    from database.session import Database

    db = Database(url or settings.database.url)
    defined = set(Base.metadata.tables.keys())
    try:
        if check_only:
            print(f"Database: {db.engine.dialect.name}")
            print(f"Tables defined: {', '.join(sorted(defined))}")
            existing = await existing_tables(db)
            print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")

            missing = defined - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist. ✓")
            return 0

        print("Running database migration...")
        await db.init()
        tables = await existing_tables(db)
        print(f"Tables created/verified: {', '.join(sorted(t for t in tables if t in defined))}")
        print("Migration complete. ✓")
        return 0
    finally:
        await db.close()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--url", default="", help="Database URL (defaults to settings)")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, url=args.url)))


if __name__ == "__main__":
    main()
