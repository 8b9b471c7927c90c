from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, delete
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from redis.asyncio import Redis
from models.state import StateEntry
from core.config import settings
from core.logger import logger


class StateStore(ABC):
    """
    Durable, device-scoped key/value store.

    Values are whole JSON documents. A `set` replaces the previous value for its key
    in one step, so a reader sees either the old document or the new one.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def keys(self, prefix: str = "") -> List[str]:
        ...

    async def close(self) -> None:
        pass


class SqlStateStore(StateStore):
    def __init__(self, session_factory: async_sessionmaker, engine: Optional[AsyncEngine] = None):
        self.session_factory = session_factory
        self.engine = engine

    async def get(self, key: str) -> Optional[str]:
        async with self.session_factory() as db:
            result = await db.execute(select(StateEntry.value).filter(StateEntry.key == key))
            return result.scalar_one_or_none()

    async def set(self, key: str, value: str) -> None:
        async with self.session_factory() as db:
            insert = postgresql_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
            stmt = insert(StateEntry).values(key=key, value=value)
            # Single INSERT .. ON CONFLICT: concurrent first writes to a key cannot collide
            stmt = stmt.on_conflict_do_update(
                index_elements=[StateEntry.key],
                set_={"value": stmt.excluded.value, "updated_at": datetime.utcnow()},
            )
            await db.execute(stmt)
            await db.commit()
        logger.debug("State entry written", key=key)

    async def delete(self, key: str) -> None:
        async with self.session_factory() as db:
            await db.execute(delete(StateEntry).where(StateEntry.key == key))
            await db.commit()
        logger.debug("State entry deleted", key=key)

    async def keys(self, prefix: str = "") -> List[str]:
        async with self.session_factory() as db:
            query = select(StateEntry.key).order_by(StateEntry.key)
            if prefix:
                query = query.filter(StateEntry.key.startswith(prefix, autoescape=True))
            result = await db.execute(query)
            return list(result.scalars().all())

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()


class RedisStateStore(StateStore):
    def __init__(self, redis: Redis, namespace: str = None):
        self.redis = redis
        self.namespace = settings.STATE_KEY_PREFIX if namespace is None else namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    async def get(self, key: str) -> Optional[str]:
        value = await self.redis.get(self._key(key))
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    async def set(self, key: str, value: str) -> None:
        await self.redis.set(self._key(key), value)
        logger.debug("State entry written", key=key)

    async def delete(self, key: str) -> None:
        await self.redis.delete(self._key(key))
        logger.debug("State entry deleted", key=key)

    async def keys(self, prefix: str = "") -> List[str]:
        found = []
        async for raw in self.redis.scan_iter(match=f"{self.namespace}{prefix}*"):
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            found.append(raw[len(self.namespace):])
        return sorted(found)

    async def close(self) -> None:
        await self.redis.aclose()


async def build_state_store(backend: str = None) -> StateStore:
    backend = (backend or settings.STATE_BACKEND).lower()
    if backend == "redis":
        from db.session import get_redis
        logger.info("Using Redis state store", url=settings.REDIS_URL)
        return RedisStateStore(get_redis())
    if backend == "sql":
        from db.session import AsyncSessionLocal, engine, init_models
        await init_models(engine)
        logger.info("Using SQL state store", url=settings.DATABASE_URL)
        return SqlStateStore(AsyncSessionLocal, engine=engine)
    raise ValueError(f"Unknown state backend: {backend}")
