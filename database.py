import logging

from sqlmodel import SQLModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from config import DATABASE_URL
from exceptions import StorageException

logger = logging.getLogger(__name__)

# Fail fast: nothing works without a store
if not DATABASE_URL:
    raise ValueError("DATABASE_URL is not set. Please check your .env file.")

engine = create_async_engine(DATABASE_URL, echo=False, future=True)

async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    # Import so every table is registered on the metadata
    import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def get_session() -> AsyncSession:
    async with async_session() as session:
        yield session


async def save(session: AsyncSession, *instances) -> None:
    """
    Add, commit and refresh ``instances`` in one transaction; store failures
    become StorageException. Instances are flushed in the order given, so pass
    parents before the rows that reference them.
    """
    try:
        for instance in instances:
            session.add(instance)
            await session.flush()
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Commit failed: {e}")
        raise StorageException("Could not save changes, please try again later.") from e
    for instance in instances:
        await session.refresh(instance)


async def remove(session: AsyncSession, instance) -> None:
    """Delete and commit ``instance``; store failures become StorageException."""
    await session.delete(instance)
    try:
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Delete failed: {e}")
        raise StorageException("Could not save changes, please try again later.") from e
