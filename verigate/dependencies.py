"""
服务装配

所有服务通过构造参数注入依赖，应用启动时装配一次并挂到 app.state 上，
路由通过 get_services 依赖获取（测试中可直接覆盖）。
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import redis.asyncio as redis
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verigate.config import Settings
from verigate.services.account_service import AccountService
from verigate.services.email_service import Notifier
from verigate.services.rate_limit_service import RateLimitService
from verigate.services.rate_limit_store import (
    DatabaseRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
)
from verigate.services.security_service import SecurityService
from verigate.services.verification_service import VerificationService
from verigate.utils.codes import CodeHasher
from verigate.utils.timezone import Clock, utc_now_naive


@dataclass
class Services:
    verification: VerificationService
    rate_limit: RateLimitService
    security: SecurityService
    account: AccountService


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: Notifier,
    settings: Settings,
    redis_client: Optional[redis.Redis] = None,
    clock: Clock = utc_now_naive,
) -> Services:
    store: RateLimitStore
    if settings.rate_limit_backend == "redis":
        if redis_client is None:
            raise ValueError("RATE_LIMIT_BACKEND=redis 需要提供 Redis 客户端")
        store = RedisRateLimitStore(
            redis_client,
            prefix=settings.rate_limit_redis_prefix,
            ttl_seconds=settings.rate_limit_window_seconds,
        )
    else:
        store = DatabaseRateLimitStore(session_factory)

    security = SecurityService(
        session_factory,
        notifier=notifier,
        clock=clock,
        threshold=settings.lockout_threshold,
        window_hours=settings.lockout_window_hours,
        duration_hours=settings.lockout_duration_hours,
    )
    verification = VerificationService(
        session_factory,
        notifier,
        security=security,
        clock=clock,
        hasher=CodeHasher(settings.verification_code_hash_rounds),
        expire_minutes=settings.verification_code_expire_minutes,
        max_attempts=settings.verification_code_max_attempts,
        pending_ttl_hours=settings.pending_registration_ttl_hours,
        expose_codes_in_logs=not settings.is_production(),
    )
    rate_limit = RateLimitService(
        store,
        max_attempts=settings.rate_limit_max_attempts,
        window=timedelta(seconds=settings.rate_limit_window_seconds),
        clock=clock,
    )
    account = AccountService(session_factory, notifier, security=security, clock=clock)
    return Services(verification=verification, rate_limit=rate_limit, security=security, account=account)


def get_services(request: Request) -> Services:
    """获取应用装配好的服务"""
    return request.app.state.services
