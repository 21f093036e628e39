"""Key-value cache store used for snapshots, master payloads and progress."""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import CacheEntry
from .utils import utcnow

logger = logging.getLogger(__name__)


def collection_key(user_id: str) -> str:
    return f"collection:{user_id}"


def master_key(master_id: int) -> str:
    return f"master:{master_id}"


def progress_key(user_id: str) -> str:
    return f"enrichment:progress:{user_id}"


def lease_key(user_id: str) -> str:
    return f"lease:{user_id}"


def last_sync_key(user_id: str) -> str:
    return f"last-sync:{user_id}"


class CacheStore(Protocol):
    """Contract shared by the cache backends."""

    async def get(self, key: str) -> Any | None: ...

    async def put(
        self, key: str, value: Any, *, ttl_seconds: int | None = None
    ) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def acquire_lease(self, key: str, ttl_seconds: int) -> bool: ...

    async def release_lease(self, key: str) -> None: ...


class SqlCacheStore:
    """Cache store persisting JSON values in the ``cache_entries`` table.

    Expired rows behave as missing and are removed when they are next read.
    Writes follow last-writer-wins semantics.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> Any | None:
        async with self._session_factory() as session:
            entry = await session.get(CacheEntry, key)
            if entry is None:
                return None
            if entry.is_expired(utcnow()):
                await session.delete(entry)
                await session.commit()
                return None
            return entry.value

    async def put(
        self, key: str, value: Any, *, ttl_seconds: int | None = None
    ) -> None:
        now = utcnow()
        async with self._session_factory() as session:
            await session.merge(
                CacheEntry(
                    key=key,
                    value=value,
                    expires_at=_expiry(now, ttl_seconds),
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(CacheEntry).where(CacheEntry.key == key))
            await session.commit()

    async def acquire_lease(self, key: str, ttl_seconds: int) -> bool:
        """Insert ``key`` unless a live row already holds it."""

        now = utcnow()
        async with self._session_factory() as session:
            await session.execute(
                delete(CacheEntry).where(
                    CacheEntry.key == key,
                    CacheEntry.expires_at.is_not(None),
                    CacheEntry.expires_at <= now,
                )
            )
            session.add(
                CacheEntry(
                    key=key,
                    value={"acquiredAt": now.isoformat()},
                    expires_at=_expiry(now, ttl_seconds),
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("Lease %s is already held", key)
                return False
        return True

    async def release_lease(self, key: str) -> None:
        await self.delete(key)

    async def purge_expired(self) -> int:
        """Delete every expired row and return how many were removed."""

        async with self._session_factory() as session:
            result = await session.execute(
                delete(CacheEntry).where(
                    CacheEntry.expires_at.is_not(None),
                    CacheEntry.expires_at <= utcnow(),
                )
            )
            await session.commit()
        return result.rowcount or 0


class MemoryCacheStore:
    """Process-local cache store, used for development and tests."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[Any, datetime | None]] = {}

    async def get(self, key: str) -> Any | None:
        item = self._entries.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= utcnow():
            self._entries.pop(key, None)
            return None
        return copy.deepcopy(value)

    async def put(
        self, key: str, value: Any, *, ttl_seconds: int | None = None
    ) -> None:
        self._entries[key] = (copy.deepcopy(value), _expiry(utcnow(), ttl_seconds))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def acquire_lease(self, key: str, ttl_seconds: int) -> bool:
        if await self.get(key) is not None:
            return False
        await self.put(key, {"acquiredAt": utcnow().isoformat()}, ttl_seconds=ttl_seconds)
        return True

    async def release_lease(self, key: str) -> None:
        await self.delete(key)

    def keys(self) -> list[str]:
        return list(self._entries)


def _expiry(now: datetime, ttl_seconds: int | None) -> datetime | None:
    if ttl_seconds is None:
        return None
    return now + timedelta(seconds=ttl_seconds)
