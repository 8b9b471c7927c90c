from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from core.config import settings
from models.base import Base


def build_engine(database_url: str) -> AsyncEngine:
    options = {"pool_pre_ping": True, "future": True}
    # SQLite (aiosqlite) is the device-local default and does not take pool sizing
    if not database_url.startswith("sqlite"):
        options.update(pool_recycle=3600, pool_size=5, max_overflow=5)
    return create_async_engine(database_url, echo=False, **options)


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = build_engine(settings.DATABASE_URL)

AsyncSessionLocal = build_sessionmaker(engine)


async def init_models(bind: AsyncEngine = engine):
    # Import table modules so they register on Base.metadata
    import models.state  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_redis():
    from redis.asyncio import Redis
    return Redis.from_url(settings.REDIS_URL, decode_responses=True)
