from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


class UnitOfWork:
    """
    Scoped transaction for one business event.

        async with UnitOfWork(session_factory) as uow:
            uow.session.add(...)

    Commits when the block exits normally, rolls back on any exception
    (cancellation included) and always closes the session.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory
        self._session: Optional[AsyncSession] = None

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError("UnitOfWork used outside of 'async with'")
        return self._session

    async def __aenter__(self) -> "UnitOfWork":
        self._session = self._session_factory()
        await self._session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        session = self._session
        self._session = None
        try:
            if exc_type is None:
                await session.commit()
            else:
                await session.rollback()
        finally:
            await session.close()
        return False
