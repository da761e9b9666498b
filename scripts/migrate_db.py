#!/usr/bin/env python3
"""
Database Migration — Create the orchestrator tables from SQLAlchemy models.

Usage:
    # Create missing tables:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

    # Also register the automations declared in settings.yaml:
    python scripts/migrate_db.py --load-automations
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
        result = await conn.execute(text(_LIST_TABLES.get(engine.dialect.name, _LIST_TABLES["sqlite"])))
        return [row[0] for row in result.fetchall()]


async def run_migration(check_only: bool = False, load_automations: bool = False):
    from config.settings import load_settings
    settings = load_settings()

    from database.session import get_engine, init_db, close_db
    from database.models import Base

    engine = get_engine()
    expected = set(Base.metadata.tables.keys())
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {str(engine.url).split('@')[-1]}")
    print(f"Tables defined: {', '.join(sorted(expected))}")

    existing = await _existing_tables(engine)
    print(f"Tables existing: {', '.join(existing) or '(none)'}")

    if check_only:
        missing = expected - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return

    print("Running database migration...")
    await init_db(engine)
    print(f"Tables created/verified: {', '.join(await _existing_tables(engine))}")

    if load_automations:
        from automations.registry import AutomationRegistry
        from database.store import SqlAutomationStore

        registry = AutomationRegistry(SqlAutomationStore(), settings.automation)
        loaded = await registry.load_from_config(settings.automations)
        print(f"Automations registered: {loaded}/{len(settings.automations)}")

    await close_db()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--load-automations", action="store_true",
                        help="Register automations from settings.yaml")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check, load_automations=args.load_automations))


if __name__ == "__main__":
    main()
