"""
Database connection management.

Provides the async SQLAlchemy engine, a session context manager, and the
process-wide DocumentStore selected by STORE_BACKEND.
"""

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database.document_store import DocumentStore
from shared.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

engine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=10,
    max_overflow=10,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_async_session() -> AsyncIterator[AsyncSession]:
    """
    Yield an AsyncSession, rolling back on error.

    Usage:
        async with get_async_session() as session:
            await session.execute(...)
            await session.commit()
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@lru_cache
def get_document_store() -> DocumentStore:
    """
    Get the process-wide document store.

    STORE_BACKEND=sql (default) uses PostgreSQL + Redis change notifications;
    STORE_BACKEND=memory keeps everything in process.
    """
    backend = get_settings().STORE_BACKEND.lower()

    if backend == "memory":
        from database.memory_store import InMemoryDocumentStore

        logger.info("Using in-memory document store")
        return InMemoryDocumentStore()

    from database.sql_store import SQLDocumentStore

    logger.info("Using PostgreSQL document store")
    return SQLDocumentStore()
