"""
Script to create all database tables.

This script creates the deals and message_outbox tables.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
from polytrade.database import engine
from polytrade.models.base import Base

# Import all models to register them with Base
from polytrade.models.deal import Deal  # noqa: F401
from polytrade.models.message import MessageOutbox  # noqa: F401


async def create_all_tables(target_engine=engine):
    """Create all tables in the database."""
    async with target_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables(target_engine=engine):
    """Drop all tables in the database (for testing)."""
    async with target_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main():
    """Main entry point."""
    print("Creating database tables...")
    await create_all_tables()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
