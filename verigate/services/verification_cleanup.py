"""
验证数据定时清理

⚠️ 三个清理任务相互独立，只会收窄状态，不会影响进行中的合法验证：
   - 02:00 清理创建超过 24 小时的验证码（审计保留期，而不仅是 15 分钟有效期）
   - 03:00 解除已到期的账户锁定（与惰性检查共用同一解锁逻辑）
   - 04:00 清理已过期的待验证注册
   - ❌ 不清理: users / security_logs / rate_limit_attempts

每个任务捕获并记录存储异常，本轮不做任何修改，不影响其他任务。
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from verigate.models.account_lockout import AccountLockout
from verigate.models.pending_registration import PendingRegistration
from verigate.models.verification_code import VerificationCode
from verigate.services.lockout import resolve_if_expired
from verigate.utils.metrics import CLEANUP_AFFECTED
from verigate.utils.timezone import utc_now_naive

logger = logging.getLogger(__name__)

CODE_RETENTION_HOURS = 24


def _fmt(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d %H:%M:%S")


async def purge_stale_codes(
    db: AsyncSession,
    now: Optional[datetime] = None,
    dry_run: bool = False,
    retention_hours: int = CODE_RETENTION_HOURS,
) -> dict:
    """删除创建时间早于保留期的验证码"""
    now = now or utc_now_naive()
    cutoff = now - timedelta(hours=retention_hours)
    stats = {"sweep": "codes", "cutoff_time": _fmt(cutoff), "dry_run": dry_run, "deleted": 0}

    try:
        if dry_run:
            result = await db.execute(
                select(func.count(VerificationCode.id)).where(VerificationCode.created_at < cutoff)
            )
            stats["deleted"] = result.scalar() or 0
            logger.info("试运行：发现 %s 条验证码将被清理", stats["deleted"])
            return stats

        result = await db.execute(delete(VerificationCode).where(VerificationCode.created_at < cutoff))
        await db.commit()
        stats["deleted"] = result.rowcount or 0
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("验证码清理失败: %s", type(e).__name__, exc_info=True)
        stats["error"] = type(e).__name__
        return stats

    CLEANUP_AFFECTED.labels(sweep="codes").inc(stats["deleted"])
    logger.info("✓ 验证码清理完成，删除 %s 条（截止 %s UTC）", stats["deleted"], stats["cutoff_time"])
    return stats


async def release_expired_lockouts(
    db: AsyncSession,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> dict:
    """批量解除已到期的锁定"""
    now = now or utc_now_naive()
    stats = {"sweep": "lockouts", "dry_run": dry_run, "unlocked": 0}

    try:
        result = await db.execute(
            select(AccountLockout).where(
                AccountLockout.unlocked.is_(False),
                AccountLockout.expires_at <= now,
            )
        )
        lockouts = result.scalars().all()

        if dry_run:
            stats["unlocked"] = len(lockouts)
            logger.info("试运行：发现 %s 个到期锁定将被解除", stats["unlocked"])
            return stats

        for lockout in lockouts:
            if await resolve_if_expired(db, lockout, now, source="cleanup"):
                stats["unlocked"] += 1
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("锁定清理失败: %s", type(e).__name__, exc_info=True)
        stats["unlocked"] = 0
        stats["error"] = type(e).__name__
        return stats

    CLEANUP_AFFECTED.labels(sweep="lockouts").inc(stats["unlocked"])
    logger.info("✓ 锁定清理完成，解除 %s 个", stats["unlocked"])
    return stats


async def purge_expired_pending_registrations(
    db: AsyncSession,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> dict:
    """删除过期的待验证注册"""
    now = now or utc_now_naive()
    stats = {"sweep": "pending_registrations", "dry_run": dry_run, "deleted": 0}

    try:
        if dry_run:
            result = await db.execute(
                select(func.count(PendingRegistration.id)).where(PendingRegistration.expires_at < now)
            )
            stats["deleted"] = result.scalar() or 0
            logger.info("试运行：发现 %s 条待验证注册将被清理", stats["deleted"])
            return stats

        result = await db.execute(delete(PendingRegistration).where(PendingRegistration.expires_at < now))
        await db.commit()
        stats["deleted"] = result.rowcount or 0
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("待验证注册清理失败: %s", type(e).__name__, exc_info=True)
        stats["error"] = type(e).__name__
        return stats

    CLEANUP_AFFECTED.labels(sweep="pending_registrations").inc(stats["deleted"])
    logger.info("✓ 待验证注册清理完成，删除 %s 条", stats["deleted"])
    return stats
