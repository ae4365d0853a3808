#!/usr/bin/env python3
"""
Create the jobs table, or report whether it exists.

    python scripts/migrate_db.py                      # database.url from settings
    python scripts/migrate_db.py --url sqlite:///./dispatch.db
    python scripts/migrate_db.py --check              # report only, exit 1 if missing
"""
import argparse
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _table_names(sync_conn) -> list[str]:
    from sqlalchemy import inspect
    return inspect(sync_conn).get_table_names()


async def missing_tables(engine) -> list[str]:
    from database.models import Base
    async with engine.connect() as conn:
        existing = set(await conn.run_sync(_table_names))
    return sorted(set(Base.metadata.tables) - existing)


async def run_migration(check_only: bool = False, db_url: str = None) -> int:
    from config.settings import load_settings
    load_settings()

    from database.session import _redacted, close_db, get_engine, init_db

    engine = get_engine(db_url)
    print(f"Database: {engine.dialect.name} ({_redacted(str(engine.url))})")
    try:
        if not check_only:
            await init_db()
        missing = await missing_tables(engine)
    finally:
        await close_db()

    if missing:
        print(f"Missing tables: {', '.join(missing)}")
        if check_only:
            print("Run without --check to create them.")
        return 1
    print("Jobs table present." if check_only else "Migration complete.")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Create the dispatch job tables")
    parser.add_argument("--check", action="store_true", help="report status without changing anything")
    parser.add_argument("--url", default=None, help="database URL (overrides settings)")
    args = parser.parse_args()
    sys.exit(asyncio.run(run_migration(check_only=args.check, db_url=args.url)))


if __name__ == "__main__":
    main()
