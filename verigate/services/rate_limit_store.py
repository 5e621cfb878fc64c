"""
频率限制窗口存储

默认使用数据库表 rate_limit_attempts；配置 RATE_LIMIT_BACKEND=redis 时
每个标识对应一个 Redis hash，TTL 等于窗口长度。
后端异常统一转换为 StorageError。
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

import redis.asyncio as redis
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verigate.errors import StorageError
from verigate.models.rate_limit import RateLimitAttempt
from verigate.utils.identifier import Identifier

logger = logging.getLogger(__name__)


@dataclass
class RateLimitWindow:
    attempts: int
    window_start: datetime
    expires_at: datetime


class RateLimitStore(Protocol):
    async def get(self, identifier: Identifier) -> Optional[RateLimitWindow]:
        ...

    async def save(self, identifier: Identifier, window: RateLimitWindow) -> None:
        ...

    async def delete(self, identifier: Identifier) -> bool:
        ...


def _where(identifier: Identifier):
    return (
        RateLimitAttempt.identifier_type == identifier.kind.value,
        RateLimitAttempt.identifier == identifier.value,
    )


class DatabaseRateLimitStore:
    """基于数据库表的窗口存储"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, identifier: Identifier) -> Optional[RateLimitWindow]:
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(RateLimitAttempt).where(*_where(identifier)))
                record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(f"rate limit read failed: {type(e).__name__}") from e

        if record is None:
            return None
        return RateLimitWindow(record.attempts, record.window_start, record.expires_at)

    async def save(self, identifier: Identifier, window: RateLimitWindow) -> None:
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(RateLimitAttempt).where(*_where(identifier)))
                record = result.scalar_one_or_none()
                if record is None:
                    record = RateLimitAttempt(**identifier.key_fields())
                    db.add(record)
                record.attempts = window.attempts
                record.window_start = window.window_start
                record.expires_at = window.expires_at
                await db.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"rate limit write failed: {type(e).__name__}") from e

    async def delete(self, identifier: Identifier) -> bool:
        try:
            async with self.session_factory() as db:
                result = await db.execute(delete(RateLimitAttempt).where(*_where(identifier)))
                await db.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"rate limit delete failed: {type(e).__name__}") from e
        return (result.rowcount or 0) > 0


class RedisRateLimitStore:
    """基于 Redis hash 的窗口存储"""

    def __init__(self, client: redis.Redis, prefix: str, ttl_seconds: int):
        self.client = client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def _key(self, identifier: Identifier) -> str:
        return f"{self.prefix}{identifier.kind.value}:{identifier.value}"

    async def get(self, identifier: Identifier) -> Optional[RateLimitWindow]:
        try:
            data = await self.client.hgetall(self._key(identifier))
        except redis.RedisError as e:
            raise StorageError(f"rate limit read failed: {type(e).__name__}") from e

        if not data:
            return None
        try:
            return RateLimitWindow(
                attempts=int(_text(data["attempts"])),
                window_start=datetime.fromisoformat(_text(data["window_start"])),
                expires_at=datetime.fromisoformat(_text(data["expires_at"])),
            )
        except (KeyError, ValueError) as e:
            raise StorageError("rate limit record is corrupted") from e

    async def save(self, identifier: Identifier, window: RateLimitWindow) -> None:
        key = self._key(identifier)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping={
                    "attempts": window.attempts,
                    "window_start": window.window_start.isoformat(),
                    "expires_at": window.expires_at.isoformat(),
                })
                pipe.expire(key, self.ttl_seconds)
                await pipe.execute()
        except redis.RedisError as e:
            raise StorageError(f"rate limit write failed: {type(e).__name__}") from e

    async def delete(self, identifier: Identifier) -> bool:
        try:
            removed = await self.client.delete(self._key(identifier))
        except redis.RedisError as e:
            raise StorageError(f"rate limit delete failed: {type(e).__name__}") from e
        return bool(removed)


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)
