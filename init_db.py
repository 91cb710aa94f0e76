"""Initialize the storage schema for the membership store.

Creates the keyspace and per-state tables (Cassandra) or the members and
agreement scan tables (PostgreSQL), depending on MEMBERSYS_BACKEND.
Existing tables and their data are left untouched.
"""

import asyncio
import logging
import sys

from cassandra import ConsistencyLevel

from membersys.backends.cassandra import open_session, schema_statements
from membersys.config import BackendKind, StoreSettings, get_settings
from membersys.db import create_engine_from_settings
from membersys.errors import StoreError
from membersys.logging_config import setup_logging
from membersys.models import Base

logger = logging.getLogger(__name__)


async def init_cassandra(settings: StoreSettings) -> None:
    """Create the keyspace, one table per lifecycle state and the user name index."""
    config = settings.cassandra
    print(f"Initializing Cassandra keyspace {config.keyspace} on {', '.join(config.hosts)}")

    executor = await asyncio.to_thread(open_session, config)
    try:
        for statement in schema_statements(config.keyspace, config.replication_factor):
            await executor.execute(statement, consistency=ConsistencyLevel.ALL)
            print(f"✓ {statement.split(' (', 1)[0]}")
    finally:
        await executor.shutdown()


async def init_postgresql(settings: StoreSettings) -> None:
    """Create all relational tables."""
    engine = create_engine_from_settings(settings.postgresql)
    print(f"Initializing database: {engine.url.render_as_string(hide_password=True)}")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            print("✓ Created all tables")
    finally:
        await engine.dispose()
    print(f"Tables: {', '.join(Base.metadata.tables.keys())}")


async def init_database(settings: StoreSettings | None = None) -> None:
    settings = settings or get_settings()
    if settings.backend == BackendKind.CASSANDRA:
        await init_cassandra(settings)
    else:
        await init_postgresql(settings)
    print("\n✅ Schema initialization complete!")


async def main():
    """Main entry point."""
    settings = get_settings()
    setup_logging(settings.logging)
    try:
        await init_database(settings)
    except StoreError as e:
        print(f"\n❌ Error initializing schema: {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Unexpected error initializing schema: {e}")
        print(f"\n❌ Error initializing schema: {e}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
