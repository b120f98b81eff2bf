#!/usr/bin/env python3
"""
Database Migration — create the welcome_messages and messages tables.

Only create_all: existing tables are left as they are, nothing is altered.

Usage:
    python scripts/migrate_db.py
    python scripts/migrate_db.py --check
    python scripts/migrate_db.py --database-url postgresql://user:pass@db:5432/fundify
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

_LIST_TABLES = {
    "postgresql": "SELECT tablename FROM pg_tables WHERE schemaname = 'public'",
    "mysql": "SHOW TABLES",
    "sqlite": "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'",
}


async def _existing_tables(engine) -> list[str]:
    from sqlalchemy import text
    async with engine.connect() as conn:
        result = await conn.execute(text(_LIST_TABLES[engine.dialect.name]))
        return sorted(row[0] for row in result.fetchall())


async def run_migration(check_only: bool = False, database_url: str = "") -> set[str]:
    """Returns the model tables still missing afterwards (empty when all exist)."""
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from database.models import Base
    from database.session import init_db, make_engine

    settings = load_settings()
    engine = make_engine(database_url or settings.database.url)
    wanted = set(Base.metadata.tables)

    try:
        print(f"Database: {engine.dialect.name}")
        if not check_only:
            await init_db(engine)
        existing = await _existing_tables(engine)
    finally:
        await engine.dispose()

    missing = wanted - set(existing)
    print(f"Tables existing: {', '.join(existing) or '(none)'}")
    if missing:
        print(f"Tables MISSING: {', '.join(sorted(missing))}")
        print("Run without --check to create them.")
    else:
        print("All welcome pipeline tables exist. ✓")
    return missing


def main():
    parser = argparse.ArgumentParser(description="Create welcome pipeline tables")
    parser.add_argument("--check", action="store_true", help="Report status only")
    parser.add_argument("--database-url", default="", help="Override database.url")
    args = parser.parse_args()

    missing = asyncio.run(run_migration(check_only=args.check, database_url=args.database_url))
    sys.exit(1 if missing else 0)


if __name__ == "__main__":
    main()
