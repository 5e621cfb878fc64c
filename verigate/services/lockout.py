"""
账户锁定的公共逻辑

惰性检查（is_locked）与定时清理（release_expired_lockouts）共用同一个
过期解锁函数，保证两条路径写入的状态和审计日志完全一致。
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from verigate.models.account_lockout import AccountLockout
from verigate.models.security_log import SecurityLog, SecurityEventType
from verigate.utils.identifier import Identifier, IdentifierKind

logger = logging.getLogger(__name__)

AUTO_UNLOCK_REASON = "automatic unlock after expiry"


def lockout_filter(identifier: Identifier):
    return (
        AccountLockout.identifier_type == identifier.kind.value,
        AccountLockout.identifier == identifier.value,
    )


def lockout_identifier(lockout: AccountLockout) -> Identifier:
    return Identifier(IdentifierKind(lockout.identifier_type), lockout.identifier)


def is_lockout_expired(lockout: AccountLockout, now: datetime) -> bool:
    """锁定到期时刻即视为已过期"""
    return now >= lockout.expires_at


async def get_lockout(db: AsyncSession, identifier: Identifier) -> Optional[AccountLockout]:
    result = await db.execute(select(AccountLockout).where(*lockout_filter(identifier)))
    return result.scalar_one_or_none()


async def resolve_if_expired(
    db: AsyncSession,
    lockout: AccountLockout,
    now: datetime,
    source: str,
) -> bool:
    """
    锁定已到期且未解除时标记为解锁，并追加 account_unlocked 事件

    不提交事务，由调用方决定提交时机。

    Returns:
        是否执行了解锁
    """
    if lockout.unlocked or not is_lockout_expired(lockout, now):
        return False

    lockout.unlocked = True
    lockout.unlocked_at = now
    identifier = lockout_identifier(lockout)
    db.add(SecurityLog(
        event_type=SecurityEventType.ACCOUNT_UNLOCKED.value,
        details={"reason": AUTO_UNLOCK_REASON, "source": source},
        created_at=now,
        **identifier.event_fields(),
    ))
    logger.info("Lockout expired and released: %s (%s)", identifier.kind.value, source)
    return True
