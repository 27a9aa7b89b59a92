from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from webhook_ingest.core.config import Settings
from webhook_ingest.db.base import Base
import webhook_ingest.db.models  # noqa: F401  registers every table on Base.metadata


def create_engine(settings: Settings) -> AsyncEngine:
    options = {"echo": settings.DATABASE_ECHO, "future": True}
    if settings.DATABASE_URL.startswith("postgresql"):
        options.update(
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
        )
    return create_async_engine(settings.DATABASE_URL, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    # ledger rows are handed to workers after the session closes
    return async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False
    )


async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
