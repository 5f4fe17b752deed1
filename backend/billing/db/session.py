"""
Database engine and session management.

WHAT: One async engine for the process, a session factory bound to it, and
the request-scoped get_db dependency.

WHY: Settlement relies on PostgreSQL's default READ COMMITTED isolation:
when two writers race on the unique payment id, the loser must be able to
read the winner's committed transaction row after rolling back.
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from billing.core.config import settings


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for a database URL.

    Note: SQLite engines get no pool sizing; the pool options only apply
    to server databases.
    """
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory for ledger work.

    WHY: expire_on_commit=False keeps committed rows readable for the
    notification step that runs after commit, without lazy loads.
    """
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


engine = build_engine(settings.async_database_url, echo=settings.DEBUG)
AsyncSessionLocal = build_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session.

    Ledger services commit their own units of work. Anything left pending
    when the handler returns is committed here, and rolled back if the
    handler raised.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
