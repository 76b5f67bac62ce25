"""Async engine and session factory."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from postora.config import settings

engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)

SessionFactory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory.

    Ledger operations open one transaction per mutation, so services are
    handed the factory rather than a request-scoped session.
    """
    return SessionFactory
