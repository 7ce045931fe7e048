"""Session scope helpers shared by the engine module, services and tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

SessionScopeFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def build_session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> SessionScopeFactory:
    """Wrap a session maker into a commit-or-rollback scope factory."""

    @asynccontextmanager
    async def scope() -> AsyncIterator[AsyncSession]:
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    return scope


__all__ = ["SessionScopeFactory", "build_session_scope"]
