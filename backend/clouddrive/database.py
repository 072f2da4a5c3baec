"""Async SQLAlchemy engine and session factory.

Usage:
    from clouddrive.database import async_session
    from clouddrive.services.sql_metadata_store import SqlMetadataStore

    store = SqlMetadataStore(async_session)
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from clouddrive.config import settings


def _engine_kwargs(url: str) -> dict:
    # SQLite uses a static pool; pool sizing only applies to server databases.
    if url.startswith("sqlite"):
        return {"echo": False}
    return {
        "echo": False,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
    }


engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency that yields an async DB session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()
