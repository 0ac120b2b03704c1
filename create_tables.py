"""
Script to create all database tables.

This script creates all tables defined in the models.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
import sys

from tripgate.database import engine
from tripgate.models import Base


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main():
    """Main entry point."""
    if "--drop" in sys.argv:
        await drop_all_tables()
    print("Creating database tables...")
    await create_all_tables()
    await engine.dispose()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
