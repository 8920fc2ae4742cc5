#!/usr/bin/env python3
"""
Database Migration — Create scheduler tables from the SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    if dialect == "postgresql":
        result = await conn.execute(text(
            "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
        ))
    else:  # sqlite
        result = await conn.execute(text(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ))
    return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False) -> int:
    from config.settings import load_settings
    settings = load_settings()

    from database.session import configure_engine, close_db, create_tables
    from database.models import Base

    engine = configure_engine(settings.database.url)
    dialect = engine.dialect.name
    defined = set(Base.metadata.tables.keys())

    try:
        if check_only:
            print(f"Database: {dialect}")
            print(f"URL: {engine.url.render_as_string(hide_password=True)}")
            print(f"Tables defined: {', '.join(sorted(defined))}")

            async with engine.connect() as conn:
                existing = await _existing_tables(conn, dialect)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")

            missing = defined - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist. ✓")
            return 0

        print("Running database migration...")
        await create_tables(engine)

        async with engine.connect() as conn:
            tables = await _existing_tables(conn, dialect)
        print(f"Tables created/verified: {', '.join(sorted(set(tables) & defined))}")
        print("Migration complete. ✓")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check)))


if __name__ == "__main__":
    main()
