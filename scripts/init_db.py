"""
Database initialization for the document store.

Creates the ``documents`` table and its indexes (idempotent), then verifies
the PostgreSQL and Redis connections used by the sql store backend.

Run with:
    python -m scripts.init_db
"""

import asyncio
import logging
import sys

from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from database.connection import engine, get_async_session
from database.models import Base
from shared.redis_client import close_redis_client, get_redis_client

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def create_tables() -> None:
    """Create all tables declared on Base (existing tables are left alone)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"✓ Tables ready: {', '.join(Base.metadata.tables)}")


async def check_database_connection() -> bool:
    try:
        async with get_async_session() as session:
            count = (await session.execute(text("SELECT COUNT(*) FROM documents"))).scalar()
        logger.info(f"✓ Database connection successful ({count} documents)")
        return True
    except SQLAlchemyError as e:
        logger.error(f"✗ Database connection failed: {e}")
        return False


async def check_redis_connection() -> bool:
    try:
        await get_redis_client().ping()
        logger.info("✓ Redis connection successful")
        return True
    except RedisError as e:
        logger.error(f"✗ Redis connection failed: {e}")
        return False


async def main() -> int:
    try:
        await create_tables()
        db_ok = await check_database_connection()
        redis_ok = await check_redis_connection()
    finally:
        await close_redis_client()
        await engine.dispose()

    return 0 if db_ok and redis_ok else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
