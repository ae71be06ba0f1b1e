"""Script to initialize the database."""

import asyncio

from sqlalchemy import text

from app.database import combined_metadata, engine


async def init_db() -> None:
    """Initialize the database by creating all tables."""
    async with engine.begin() as conn:
        # Enable pgcrypto extension
        await conn.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))

        # Create all tables
        await conn.run_sync(combined_metadata().create_all)

        print("✓ Database initialized successfully!")


if __name__ == "__main__":
    asyncio.run(init_db())
