"""
Database setup/config/funcs.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from aira_common.settings import DatabaseSettings

SessionFactory = Callable[[], AsyncSession]


def build_engine(config: DatabaseSettings, **kwargs) -> AsyncEngine:
    return create_async_engine(config.sqlalchemy, echo=config.debug, **kwargs)


def build_session_factory(engine: AsyncEngine) -> SessionFactory:
    return sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(factory: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
