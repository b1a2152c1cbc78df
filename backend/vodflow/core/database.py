"""Async SQLAlchemy engine and session factory.

Stores open one short-lived session per operation from async_session_maker,
so long pipeline runs never hold a connection across stages.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from vodflow.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all catalog and pipeline tables."""


engine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=settings.DATABASE_POOL_SIZE,
    pool_pre_ping=True,
    echo=settings.DEBUG,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
