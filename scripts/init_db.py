"""Script to initialize the database."""

import asyncio

from practice_scheduler.database import engine
from practice_scheduler.models import metadata


async def init_db() -> None:
    """Create the appointments table, its constraints and indexes."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    await engine.dispose()
    print("✓ Database initialized successfully!")
    for table in metadata.sorted_tables:
        print(f"  - {table.name}")


if __name__ == "__main__":
    asyncio.run(init_db())
