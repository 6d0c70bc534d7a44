"""Database engine, session factory, and declarative base.

Two FastAPI dependencies:
  - get_db()            → a request-scoped session, committed on success
  - get_sessionmaker()  → the session factory itself, handed to the
                          transactional services (roles, tokens, ledger)
                          which open their own transaction per operation
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# ── Base class ──────────────────────────────────────────────

class Base(DeclarativeBase):
    pass


# ── Session dependencies ────────────────────────────────────

async def get_db() -> AsyncSession:
    """Yield a session; commit when the request succeeds."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Return the session factory used by the transactional services."""
    return async_session
