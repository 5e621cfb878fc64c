"""
安全监控服务 - 失败计数、账户锁定、安全审计

规则：
1. 1 小时内验证失败达到 10 次即锁定标识 1 小时
2. 锁定作用于整个标识（所有验证类型）
3. 写操作失败只记日志不抛出，审计查询失败返回空结果
4. 锁定状态查询失败时视为未锁定
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verigate.models.account_lockout import AccountLockout
from verigate.models.security_log import SecurityLog, SecurityEventType
from verigate.models.verification_code import VerificationType
from verigate.schemas.security import (
    SecurityEventCreate,
    SecurityEventRecord,
    SecurityStatistics,
)
from verigate.services.email_service import NotificationTemplate, Notifier
from verigate.services.lockout import get_lockout, resolve_if_expired
from verigate.utils.identifier import Identifier
from verigate.utils.metrics import ACCOUNT_LOCKOUTS
from verigate.utils.timezone import Clock, format_china_time, utc_now_naive

logger = logging.getLogger(__name__)

LOCKOUT_THRESHOLD = 10
LOCKOUT_WINDOW_HOURS = 1
LOCKOUT_DURATION_HOURS = 1


def _to_record(log: SecurityLog) -> SecurityEventRecord:
    return SecurityEventRecord(
        id=log.id,
        user_id=log.user_id,
        email=log.email,
        event_type=log.event_type,
        ip_address=log.ip_address,
        user_agent=log.user_agent,
        metadata=log.details or {},
        created_at=log.created_at,
    )


class SecurityService:
    """
    安全监控服务

    使用方式:
        security = SecurityService(AsyncSessionLocal, notifier=EmailNotifier())
        if await security.is_locked(identifier):
            ...  # 拒绝验证
        await security.record_verification_attempt(identifier, VerificationType.EMAIL_CHANGE, success=False)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Optional[Notifier] = None,
        clock: Clock = utc_now_naive,
        threshold: int = LOCKOUT_THRESHOLD,
        window_hours: int = LOCKOUT_WINDOW_HOURS,
        duration_hours: int = LOCKOUT_DURATION_HOURS,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        self.threshold = threshold
        self.window_hours = window_hours
        self.duration_hours = duration_hours

    # ------------------------------------------------------------------
    # 事件写入
    # ------------------------------------------------------------------

    def add_event(self, db: AsyncSession, event: SecurityEventCreate, now: Optional[datetime] = None) -> SecurityLog:
        """在调用方的事务中追加一条事件（不提交）"""
        log = SecurityLog(
            user_id=event.user_id,
            email=event.email,
            event_type=event.event_type.value,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            details=dict(event.metadata or {}),
            created_at=now or self.clock(),
        )
        db.add(log)
        return log

    async def log_event(self, event: SecurityEventCreate) -> None:
        """追加安全事件，失败只记日志"""
        try:
            async with self.session_factory() as db:
                self.add_event(db, event)
                await db.commit()
        except SQLAlchemyError:
            logger.error("Failed to log security event %s", event.event_type.value, exc_info=True)

    # ------------------------------------------------------------------
    # 锁定
    # ------------------------------------------------------------------

    async def is_locked(self, identifier: Identifier) -> bool:
        """
        标识当前是否被锁定

        锁定已到期但未解除时会顺带解除锁定并返回 False。
        """
        try:
            async with self.session_factory() as db:
                lockout = await get_lockout(db, identifier)
                if lockout is None:
                    return False
                if await resolve_if_expired(db, lockout, self.clock(), source="lazy_check"):
                    await db.commit()
                    return False
                return not lockout.unlocked
        except SQLAlchemyError:
            logger.error("Lockout check failed for %s, treating as unlocked", identifier.kind.value, exc_info=True)
            return False

    async def get_failure_count(self, identifier: Identifier, window_hours: Optional[int] = None) -> int:
        """统计窗口内的 verification_failed 事件数"""
        hours = self.window_hours if window_hours is None else window_hours
        window_start = self.clock() - timedelta(hours=hours)
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(func.count(SecurityLog.id)).where(
                        identifier.matches(SecurityLog),
                        SecurityLog.event_type == SecurityEventType.VERIFICATION_FAILED.value,
                        SecurityLog.created_at >= window_start,
                    )
                )
                return result.scalar() or 0
        except SQLAlchemyError:
            logger.error("Failed to count verification failures", exc_info=True)
            return 0

    async def lock_account(self, identifier: Identifier, reason: str) -> bool:
        """
        锁定标识

        已存在未解除且未到期的锁定时不做任何事。

        Returns:
            是否新建了锁定
        """
        now = self.clock()
        expires_at = now + timedelta(hours=self.duration_hours)
        try:
            async with self.session_factory() as db:
                lockout = await get_lockout(db, identifier)
                if lockout is not None:
                    await resolve_if_expired(db, lockout, now, source="lock_account")
                    if not lockout.unlocked:
                        return False
                else:
                    lockout = AccountLockout(**identifier.key_fields())
                    db.add(lockout)

                lockout.reason = reason
                lockout.locked_at = now
                lockout.expires_at = expires_at
                lockout.unlocked = False
                lockout.unlocked_at = None

                self.add_event(db, SecurityEventCreate.for_identifier(
                    identifier,
                    SecurityEventType.ACCOUNT_LOCKED,
                    metadata={"reason": reason, "expires_at": expires_at.isoformat()},
                ), now)
                await db.commit()
        except SQLAlchemyError:
            logger.error("Failed to lock %s", identifier.kind.value, exc_info=True)
            return False

        ACCOUNT_LOCKOUTS.inc()
        logger.warning("Identifier locked: %s until %s", identifier.kind.value, expires_at.isoformat())
        await self._notify_lockout(identifier, expires_at)
        return True

    async def unlock_account(self, identifier: Identifier, reason: str = "manual unlock") -> bool:
        """解除锁定，没有锁定或已解除时不做任何事"""
        now = self.clock()
        try:
            async with self.session_factory() as db:
                lockout = await get_lockout(db, identifier)
                if lockout is None or lockout.unlocked:
                    return False
                lockout.unlocked = True
                lockout.unlocked_at = now
                self.add_event(db, SecurityEventCreate.for_identifier(
                    identifier,
                    SecurityEventType.ACCOUNT_UNLOCKED,
                    metadata={"reason": reason},
                ), now)
                await db.commit()
        except SQLAlchemyError:
            logger.error("Failed to unlock %s", identifier.kind.value, exc_info=True)
            return False
        return True

    async def record_verification_attempt(
        self,
        identifier: Identifier,
        verification_type: VerificationType,
        success: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """
        记录一次验证结果，失败时检查是否需要锁定

        先写入本次失败事件再计数，触发锁定的这一次也计入阈值。
        """
        event_type = SecurityEventType.VERIFICATION_SUCCESS if success else SecurityEventType.VERIFICATION_FAILED
        await self.log_event(SecurityEventCreate.for_identifier(
            identifier,
            event_type,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"verification_type": verification_type.value, "success": success},
        ))
        if success:
            return

        failures = await self.get_failure_count(identifier, self.window_hours)
        if failures >= self.threshold:
            await self.lock_account(
                identifier,
                f"Account locked due to {self.threshold} failed verification attempts "
                f"within {self.window_hours} hour(s)",
            )

    async def _notify_lockout(self, identifier: Identifier, expires_at: datetime) -> None:
        if self.notifier is None or not identifier.is_email:
            return
        try:
            await self.notifier.notify(
                identifier.value,
                NotificationTemplate.ACCOUNT_LOCKOUT_NOTIFICATION,
                {"expires_at": format_china_time(expires_at)},
            )
        except Exception:
            logger.warning("Failed to send lockout notification", exc_info=True)

    # ------------------------------------------------------------------
    # 审计查询（失败返回空结果）
    # ------------------------------------------------------------------

    async def get_events_by_identifier(
        self,
        identifier: Identifier,
        event_type: Optional[SecurityEventType] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityEventRecord]:
        query = select(SecurityLog).where(identifier.matches(SecurityLog))
        if event_type is not None:
            query = query.where(SecurityLog.event_type == event_type.value)
        return await self._fetch_events(query, limit)

    async def get_events_by_type(
        self,
        event_type: SecurityEventType,
        limit: Optional[int] = None,
    ) -> List[SecurityEventRecord]:
        query = select(SecurityLog).where(SecurityLog.event_type == event_type.value)
        return await self._fetch_events(query, limit)

    async def get_recent_failures(self, identifier: Identifier, limit: int = 10) -> List[SecurityEventRecord]:
        return await self.get_events_by_identifier(identifier, SecurityEventType.VERIFICATION_FAILED, limit)

    async def get_statistics(self, identifier: Identifier) -> SecurityStatistics:
        """按事件类型汇总，附带当前锁定状态与最近一次锁定时间"""
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(SecurityLog.event_type, func.count(SecurityLog.id))
                    .where(identifier.matches(SecurityLog))
                    .group_by(SecurityLog.event_type)
                )
                counts = {event_type: count for event_type, count in result.all()}

                last_lockout = await db.execute(
                    select(func.max(SecurityLog.created_at)).where(
                        identifier.matches(SecurityLog),
                        SecurityLog.event_type == SecurityEventType.ACCOUNT_LOCKED.value,
                    )
                )
                last_lockout_at = last_lockout.scalar()
        except SQLAlchemyError:
            logger.error("Failed to load security statistics", exc_info=True)
            return SecurityStatistics()

        return SecurityStatistics(
            total_events=sum(counts.values()),
            verifications_sent=counts.get(SecurityEventType.VERIFICATION_SENT.value, 0),
            verifications_succeeded=counts.get(SecurityEventType.VERIFICATION_SUCCESS.value, 0),
            verifications_failed=counts.get(SecurityEventType.VERIFICATION_FAILED.value, 0),
            account_locked=await self.is_locked(identifier),
            last_lockout_at=last_lockout_at,
        )

    async def _fetch_events(self, query, limit: Optional[int]) -> List[SecurityEventRecord]:
        query = query.order_by(SecurityLog.created_at.desc())
        if limit is not None:
            query = query.limit(limit)
        try:
            async with self.session_factory() as db:
                result = await db.execute(query)
                return [_to_record(log) for log in result.scalars().all()]
        except SQLAlchemyError:
            logger.error("Failed to query security events", exc_info=True)
            return []
