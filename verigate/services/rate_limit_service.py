"""
验证码发送频率限制 - 固定窗口

每个标识在窗口（默认 1 小时）内最多发送 5 次验证码。
存储不可用时放行（fail open），避免影响正常用户。
"""
import logging
import math
from datetime import datetime, timedelta

from verigate.errors import StorageError
from verigate.schemas.verification import RateLimitResult
from verigate.services.rate_limit_store import RateLimitStore, RateLimitWindow
from verigate.utils.identifier import Identifier
from verigate.utils.metrics import RATE_LIMIT_REJECTIONS
from verigate.utils.timezone import Clock, utc_now_naive

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_WINDOW = timedelta(hours=1)


class RateLimitService:
    """
    频率限制服务

    使用方式:
        limiter = RateLimitService(DatabaseRateLimitStore(AsyncSessionLocal))
        result = await limiter.check_limit(Identifier.by_email(email))
        if result.allowed:
            ...  # 发送验证码
            await limiter.record_attempt(Identifier.by_email(email))

    check 与 record 不是原子的，并发时可能少计数，不会多计数。
    """

    def __init__(
        self,
        store: RateLimitStore,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window: timedelta = DEFAULT_WINDOW,
        clock: Clock = utc_now_naive,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.window = window
        self.clock = clock

    async def check_limit(self, identifier: Identifier) -> RateLimitResult:
        """检查是否还允许发送"""
        try:
            window = await self.store.get(identifier)
        except StorageError:
            logger.error("Rate limit check failed for %s, allowing request", identifier.kind.value, exc_info=True)
            return RateLimitResult(allowed=True, remaining_attempts=self.max_attempts)

        now = self.clock()
        if window is None:
            return RateLimitResult(allowed=True, remaining_attempts=self.max_attempts - 1)

        if now > window.expires_at:
            return RateLimitResult(allowed=True, remaining_attempts=self.max_attempts - 1)

        if window.attempts >= self.max_attempts:
            RATE_LIMIT_REJECTIONS.inc()
            return RateLimitResult(
                allowed=False,
                remaining_attempts=0,
                reset_time=window.expires_at,
                wait_minutes=_minutes_until(window, now),
            )

        return RateLimitResult(
            allowed=True,
            remaining_attempts=self.max_attempts - window.attempts - 1,
            reset_time=window.expires_at,
        )

    async def record_attempt(self, identifier: Identifier) -> None:
        """记录一次发送（新建 / 窗口过期重置 / 计数加一），失败只记日志"""
        now = self.clock()
        try:
            window = await self.store.get(identifier)
            if window is None or now > window.expires_at:
                window = RateLimitWindow(attempts=1, window_start=now, expires_at=now + self.window)
            else:
                window.attempts += 1
            await self.store.save(identifier, window)
        except StorageError:
            logger.error("Failed to record rate limit attempt for %s", identifier.kind.value, exc_info=True)

    async def get_remaining_wait_time(self, identifier: Identifier) -> int:
        """仍被限制时返回剩余分钟数，否则为 0"""
        try:
            window = await self.store.get(identifier)
        except StorageError:
            logger.error("Failed to read rate limit window for %s", identifier.kind.value, exc_info=True)
            return 0

        now = self.clock()
        if window is None or now > window.expires_at or window.attempts < self.max_attempts:
            return 0
        return _minutes_until(window, now)

    async def reset_limit(self, identifier: Identifier) -> None:
        """清除标识的计数，记录不存在时不做任何事"""
        try:
            await self.store.delete(identifier)
        except StorageError:
            logger.error("Failed to reset rate limit for %s", identifier.kind.value, exc_info=True)


def _minutes_until(window: RateLimitWindow, now: datetime) -> int:
    seconds = (window.expires_at - now).total_seconds()
    return max(0, math.ceil(seconds / 60))
