"""
验证码服务 - 注册 / 修改邮箱 / 修改手机号

流程：
1. 发送：作废同类型未使用的旧验证码，生成新验证码（只存 bcrypt 哈希），投递
2. 校验：不存在 -> 已过期 -> 次数耗尽 -> 错误（计数 +1）-> 正确（执行业务副作用）
3. 每个验证码最多尝试 3 次，15 分钟有效

投递失败时验证码仍然保留，非生产环境会把明文写入日志便于调试。
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verigate.errors import Outcome, RecordNotFoundError, format_message
from verigate.models.pending_registration import PendingRegistration
from verigate.models.security_log import SecurityEventType
from verigate.models.user import User
from verigate.models.verification_code import VerificationCode, VerificationType
from verigate.schemas.security import SecurityEventCreate
from verigate.schemas.user import AccountResponse
from verigate.schemas.verification import (
    CodeStatistics,
    IssueResult,
    ValidationResult,
    VerificationCodeRecord,
)
from verigate.services.email_service import (
    DeliveryStatus,
    NotificationTemplate,
    Notifier,
    sanitize_email,
)
from verigate.services.security_service import SecurityService
from verigate.utils import codes
from verigate.utils.identifier import Identifier
from verigate.utils.metrics import CODES_ISSUED, VALIDATION_OUTCOMES
from verigate.utils.timezone import Clock, utc_now_naive

logger = logging.getLogger(__name__)

CODE_EXPIRE_MINUTES = 15
CODE_MAX_ATTEMPTS = 3
PENDING_REGISTRATION_TTL_HOURS = 24

CODE_TEMPLATES = {
    VerificationType.EMAIL_REGISTRATION: NotificationTemplate.REGISTRATION_VERIFICATION,
    VerificationType.EMAIL_CHANGE: NotificationTemplate.EMAIL_CHANGE_VERIFICATION,
    VerificationType.PHONE_CHANGE: NotificationTemplate.PHONE_CHANGE_VERIFICATION,
}

# 校验成功后在同一事务中执行的业务副作用，返回账户或拒绝原因
SuccessHandler = Callable[
    [AsyncSession, VerificationCode, datetime],
    Awaitable[Union[User, Outcome]],
]


class VerificationService:
    """
    验证码服务

    使用方式:
        service = VerificationService(AsyncSessionLocal, EmailNotifier(), security=security)
        await service.issue_registration_code(email, password_hash, name)
        result = await service.validate_registration_code(email, code)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        security: Optional[SecurityService] = None,
        clock: Clock = utc_now_naive,
        hasher: Optional[codes.CodeHasher] = None,
        expire_minutes: int = CODE_EXPIRE_MINUTES,
        max_attempts: int = CODE_MAX_ATTEMPTS,
        pending_ttl_hours: int = PENDING_REGISTRATION_TTL_HOURS,
        expose_codes_in_logs: bool = False,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.security = security
        self.clock = clock
        self.hasher = hasher or codes.CodeHasher()
        self.expire_minutes = expire_minutes
        self.max_attempts = max_attempts
        self.pending_ttl_hours = pending_ttl_hours
        self.expose_codes_in_logs = expose_codes_in_logs

    # ------------------------------------------------------------------
    # 基础操作
    # ------------------------------------------------------------------

    def generate_code(self) -> str:
        return codes.generate_code()

    async def hash_code(self, code: str) -> str:
        # bcrypt 是 CPU 密集操作
        return await asyncio.to_thread(self.hasher.hash, code)

    async def verify_code_hash(self, code: str, code_hash: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, code, code_hash)

    def is_code_expired(self, expires_at: datetime) -> bool:
        return codes.is_expired(expires_at, self.clock())

    # ------------------------------------------------------------------
    # 注册
    # ------------------------------------------------------------------

    async def issue_registration_code(
        self,
        email: str,
        password_hash: str,
        name: str,
        phone: Optional[str] = None,
    ) -> IssueResult:
        """暂存注册信息并向邮箱发送验证码"""
        identifier = Identifier.by_email(email)
        code = self.generate_code()
        code_hash = await self.hash_code(code)
        now = self.clock()

        try:
            async with self.session_factory() as db:
                existing = await db.execute(select(User.id).where(User.email == email))
                if existing.scalar_one_or_none() is not None:
                    return self._issue_failed(Outcome.EMAIL_IN_USE)

                pending = await self._get_pending(db, email)
                if pending is None:
                    pending = PendingRegistration(email=email, created_at=now)
                    db.add(pending)
                pending.password_hash = password_hash
                pending.name = name
                pending.phone = phone
                pending.expires_at = now + timedelta(hours=self.pending_ttl_hours)

                await self._store_code(db, identifier, VerificationType.EMAIL_REGISTRATION, code_hash, now)
                await db.commit()
                pending_id = pending.id
        except SQLAlchemyError:
            logger.error("Failed to issue registration code for %s", sanitize_email(email), exc_info=True)
            return self._issue_failed(Outcome.STORAGE_FAILURE)

        await self._deliver(email, VerificationType.EMAIL_REGISTRATION, code)
        await self._log(identifier, SecurityEventType.VERIFICATION_SENT, VerificationType.EMAIL_REGISTRATION)
        return IssueResult(success=True, message=format_message("code_sent"), pending_id=pending_id)

    async def validate_registration_code(self, email: str, code: str) -> ValidationResult:
        """校验注册验证码，成功后创建正式账户并删除暂存记录"""
        return await self._validate(
            Identifier.by_email(email),
            VerificationType.EMAIL_REGISTRATION,
            code,
            self._promote_pending_registration,
            success_message="verification_success",
        )

    async def resend_registration_code(self, email: str) -> IssueResult:
        """重新发送注册验证码，旧验证码立即作废"""
        identifier = Identifier.by_email(email)
        code = self.generate_code()
        code_hash = await self.hash_code(code)
        now = self.clock()

        try:
            async with self.session_factory() as db:
                pending = await self._get_pending(db, email)
                if pending is None:
                    return self._issue_failed(Outcome.USER_NOT_FOUND)
                await self._store_code(db, identifier, VerificationType.EMAIL_REGISTRATION, code_hash, now)
                await db.commit()
                pending_id = pending.id
        except SQLAlchemyError:
            logger.error("Failed to resend registration code for %s", sanitize_email(email), exc_info=True)
            return self._issue_failed(Outcome.STORAGE_FAILURE)

        await self._deliver(email, VerificationType.EMAIL_REGISTRATION, code)
        await self._log(identifier, SecurityEventType.VERIFICATION_SENT, VerificationType.EMAIL_REGISTRATION, {"resend": True})
        return IssueResult(success=True, message=format_message("code_sent"), pending_id=pending_id)

    async def _promote_pending_registration(
        self, db: AsyncSession, record: VerificationCode, now: datetime
    ) -> Union[User, Outcome]:
        pending = await self._get_pending(db, record.email)
        if pending is None:
            return Outcome.USER_NOT_FOUND

        user = User(
            email=pending.email,
            password_hash=pending.password_hash,
            name=pending.name,
            phone=pending.phone,
            email_verified=True,
            email_verified_at=now,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        db.add(user)
        await db.delete(pending)
        return user

    # ------------------------------------------------------------------
    # 修改邮箱
    # ------------------------------------------------------------------

    async def issue_email_change_code(self, user_id: str, new_email: str) -> IssueResult:
        """向新邮箱发送验证码，同时提醒旧邮箱"""
        identifier = Identifier.by_user(user_id)
        code = self.generate_code()
        code_hash = await self.hash_code(code)
        now = self.clock()

        try:
            async with self.session_factory() as db:
                user = await db.get(User, user_id)
                if user is None:
                    return self._issue_failed(Outcome.USER_NOT_FOUND)
                if await self._email_taken(db, new_email, exclude_user_id=None):
                    return self._issue_failed(Outcome.EMAIL_IN_USE)
                old_email = user.email

                await self._store_code(
                    db, identifier, VerificationType.EMAIL_CHANGE, code_hash, now, target=new_email
                )
                await db.commit()
        except SQLAlchemyError:
            logger.error("Failed to issue email change code for user %s", user_id, exc_info=True)
            return self._issue_failed(Outcome.STORAGE_FAILURE)

        await self._notify_quietly(
            old_email, NotificationTemplate.EMAIL_CHANGE_NOTIFICATION, {"new_email": new_email}
        )
        await self._deliver(new_email, VerificationType.EMAIL_CHANGE, code)
        await self._log(identifier, SecurityEventType.VERIFICATION_SENT, VerificationType.EMAIL_CHANGE)
        return IssueResult(success=True, message=format_message("code_sent"))

    async def validate_email_change_code(self, user_id: str, code: str) -> ValidationResult:
        """校验修改邮箱验证码，成功后更新邮箱"""
        return await self._validate(
            Identifier.by_user(user_id),
            VerificationType.EMAIL_CHANGE,
            code,
            self._apply_email_change,
            success_message="email_changed",
        )

    async def _apply_email_change(
        self, db: AsyncSession, record: VerificationCode, now: datetime
    ) -> Union[User, Outcome]:
        user = await db.get(User, record.user_id)
        if user is None:
            return Outcome.USER_NOT_FOUND
        if await self._email_taken(db, record.target, exclude_user_id=user.id):
            return Outcome.EMAIL_IN_USE

        old_email = user.email
        user.email = record.target
        user.email_verified = True
        user.email_verified_at = now
        user.updated_at = now
        self._add_event(db, SecurityEventCreate(
            event_type=SecurityEventType.EMAIL_CHANGED,
            user_id=user.id,
            email=user.email,
            metadata={"old_email": old_email, "new_email": user.email},
        ), now)
        return user

    # ------------------------------------------------------------------
    # 修改手机号
    # ------------------------------------------------------------------

    async def issue_phone_change_code(self, user_id: str, new_phone: str) -> IssueResult:
        """验证码发送到用户当前邮箱"""
        identifier = Identifier.by_user(user_id)
        code = self.generate_code()
        code_hash = await self.hash_code(code)
        now = self.clock()

        try:
            async with self.session_factory() as db:
                user = await db.get(User, user_id)
                if user is None:
                    return self._issue_failed(Outcome.USER_NOT_FOUND)
                current_email = user.email
                await self._store_code(
                    db, identifier, VerificationType.PHONE_CHANGE, code_hash, now, target=new_phone
                )
                await db.commit()
        except SQLAlchemyError:
            logger.error("Failed to issue phone change code for user %s", user_id, exc_info=True)
            return self._issue_failed(Outcome.STORAGE_FAILURE)

        await self._deliver(current_email, VerificationType.PHONE_CHANGE, code)
        await self._log(identifier, SecurityEventType.VERIFICATION_SENT, VerificationType.PHONE_CHANGE)
        return IssueResult(success=True, message=format_message("code_sent"))

    async def validate_phone_change_code(self, user_id: str, code: str) -> ValidationResult:
        """校验修改手机号验证码，成功后更新手机号"""
        return await self._validate(
            Identifier.by_user(user_id),
            VerificationType.PHONE_CHANGE,
            code,
            self._apply_phone_change,
            success_message="phone_changed",
        )

    async def _apply_phone_change(
        self, db: AsyncSession, record: VerificationCode, now: datetime
    ) -> Union[User, Outcome]:
        user = await db.get(User, record.user_id)
        if user is None:
            return Outcome.USER_NOT_FOUND

        old_phone = user.phone
        user.phone = record.target
        user.updated_at = now
        self._add_event(db, SecurityEventCreate(
            event_type=SecurityEventType.PHONE_CHANGED,
            user_id=user.id,
            email=user.email,
            metadata={"old_phone": old_phone, "new_phone": user.phone},
        ), now)
        return user

    # ------------------------------------------------------------------
    # 校验状态机
    # ------------------------------------------------------------------

    async def _validate(
        self,
        identifier: Identifier,
        verification_type: VerificationType,
        code: str,
        on_success: SuccessHandler,
        success_message: str,
    ) -> ValidationResult:
        now = self.clock()
        try:
            async with self.session_factory() as db:
                record = await self._find_active_code(db, identifier, verification_type)
                if record is None:
                    outcome = await self._missing_code_outcome(db, identifier, verification_type)
                    return self._rejected(verification_type, outcome)

                if codes.is_expired(record.expires_at, now):
                    self._add_event(db, SecurityEventCreate.for_identifier(
                        identifier,
                        SecurityEventType.CODE_EXPIRED,
                        metadata={"verification_type": verification_type.value, "code_id": record.id},
                    ), now)
                    await db.commit()
                    return self._rejected(verification_type, Outcome.EXPIRED)

                if record.attempts >= record.max_attempts:
                    await self._invalidate(db, identifier, record, now, "max_attempts_reached")
                    await db.commit()
                    return self._rejected(verification_type, Outcome.INVALIDATED)

                if not await self.verify_code_hash(code, record.code_hash):
                    # 提交的是被重发取代的旧验证码，不消耗新验证码的次数
                    if await self._matches_superseded_code(db, identifier, record, code):
                        return self._rejected(verification_type, Outcome.INVALIDATED)

                    attempts = await self._increment_attempts(db, record, now)
                    remaining = record.max_attempts - attempts
                    if remaining <= 0:
                        await self._invalidate(db, identifier, record, now, "max_attempts_reached")
                        await db.commit()
                        return self._rejected(verification_type, Outcome.INVALIDATED)
                    await db.commit()
                    return self._rejected(verification_type, Outcome.INCORRECT, attempts=remaining)

                outcome = await on_success(db, record, now)
                if isinstance(outcome, Outcome):
                    await db.rollback()
                    return self._rejected(verification_type, outcome)

                record.verified = True
                record.verified_at = now
                record.updated_at = now
                await db.commit()
                account = AccountResponse.model_validate(outcome)
        except SQLAlchemyError:
            logger.error("Verification failed for %s (%s)", identifier.kind.value, verification_type.value, exc_info=True)
            return self._rejected(verification_type, Outcome.STORAGE_FAILURE)

        VALIDATION_OUTCOMES.labels(type=verification_type.value, outcome=Outcome.SUCCESS.value).inc()
        return ValidationResult(
            success=True,
            message=format_message(success_message),
            outcome=Outcome.SUCCESS,
            account=account,
        )

    async def _find_active_code(
        self,
        db: AsyncSession,
        identifier: Identifier,
        verification_type: VerificationType,
    ) -> Optional[VerificationCode]:
        """最新一条未使用、未作废的验证码"""
        result = await db.execute(
            select(VerificationCode)
            .where(
                identifier.matches(VerificationCode),
                VerificationCode.type == verification_type.value,
                VerificationCode.verified.is_(False),
                VerificationCode.invalidated.is_(False),
            )
            .order_by(VerificationCode.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _missing_code_outcome(
        self,
        db: AsyncSession,
        identifier: Identifier,
        verification_type: VerificationType,
    ) -> Outcome:
        """没有可用验证码时，最新一条因次数耗尽被作废则返回 invalidated"""
        result = await db.execute(
            select(VerificationCode.verified, VerificationCode.invalidated)
            .where(
                identifier.matches(VerificationCode),
                VerificationCode.type == verification_type.value,
            )
            .order_by(VerificationCode.created_at.desc())
            .limit(1)
        )
        latest = result.first()
        if latest is not None and latest.invalidated and not latest.verified:
            return Outcome.INVALIDATED
        return Outcome.NOT_FOUND

    async def _matches_superseded_code(
        self,
        db: AsyncSession,
        identifier: Identifier,
        active: VerificationCode,
        code: str,
    ) -> bool:
        """与当前验证码之前最近一条已作废、未使用的验证码比对"""
        result = await db.execute(
            select(VerificationCode.code_hash)
            .where(
                identifier.matches(VerificationCode),
                VerificationCode.type == active.type,
                VerificationCode.id != active.id,
                VerificationCode.verified.is_(False),
                VerificationCode.invalidated.is_(True),
                VerificationCode.created_at <= active.created_at,
            )
            .order_by(VerificationCode.created_at.desc())
            .limit(1)
        )
        previous_hash = result.scalar_one_or_none()
        if previous_hash is None:
            return False
        return await self.verify_code_hash(code, previous_hash)

    async def _increment_attempts(self, db: AsyncSession, record: VerificationCode, now: datetime) -> int:
        """数据库层原子 +1，返回新的尝试次数"""
        await db.execute(
            update(VerificationCode)
            .where(VerificationCode.id == record.id)
            .values(attempts=VerificationCode.attempts + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(select(VerificationCode.attempts).where(VerificationCode.id == record.id))
        return result.scalar_one()

    async def _invalidate(
        self,
        db: AsyncSession,
        identifier: Identifier,
        record: VerificationCode,
        now: datetime,
        reason: str,
    ) -> None:
        await db.execute(
            update(VerificationCode)
            .where(VerificationCode.id == record.id)
            .values(invalidated=True, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self._add_event(db, SecurityEventCreate.for_identifier(
            identifier,
            SecurityEventType.CODE_INVALIDATED,
            metadata={"verification_type": record.type, "code_id": record.id, "reason": reason},
        ), now)

    async def _store_code(
        self,
        db: AsyncSession,
        identifier: Identifier,
        verification_type: VerificationType,
        code_hash: str,
        now: datetime,
        target: Optional[str] = None,
    ) -> VerificationCode:
        """作废同类型未使用的旧验证码并写入新验证码（不提交）"""
        await db.execute(
            update(VerificationCode)
            .where(
                identifier.matches(VerificationCode),
                VerificationCode.type == verification_type.value,
                VerificationCode.verified.is_(False),
                VerificationCode.invalidated.is_(False),
            )
            .values(invalidated=True, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        record = VerificationCode(
            type=verification_type.value,
            code_hash=code_hash,
            target=target,
            attempts=0,
            max_attempts=self.max_attempts,
            expires_at=now + timedelta(minutes=self.expire_minutes),
            verified=False,
            invalidated=False,
            created_at=now,
            updated_at=now,
            **identifier.event_fields(),
        )
        db.add(record)
        return record

    # ------------------------------------------------------------------
    # 投递与审计
    # ------------------------------------------------------------------

    async def _deliver(self, address: str, verification_type: VerificationType, code: str) -> DeliveryStatus:
        try:
            status = await self.notifier.notify(
                address,
                CODE_TEMPLATES[verification_type],
                {"code": code, "expire_minutes": self.expire_minutes},
            )
        except Exception:
            logger.error("Notifier raised while sending %s code", verification_type.value, exc_info=True)
            status = DeliveryStatus.FAILED

        CODES_ISSUED.labels(type=verification_type.value, delivery=status.value).inc()
        if status is DeliveryStatus.FAILED:
            logger.error("Failed to deliver %s code to %s", verification_type.value, sanitize_email(address))
            if self.expose_codes_in_logs:
                logger.warning(
                    "Undelivered verification code for %s: %s (expires in %s minutes)",
                    sanitize_email(address), code, self.expire_minutes,
                )
        return status

    async def _notify_quietly(self, address: str, template: NotificationTemplate, data: dict) -> None:
        """安全提醒类通知，失败不影响主流程"""
        try:
            status = await self.notifier.notify(address, template, data)
        except Exception:
            logger.warning("Notifier raised while sending %s", template.value, exc_info=True)
            return
        if status is DeliveryStatus.FAILED:
            logger.warning("Failed to send %s to %s", template.value, sanitize_email(address))

    def _add_event(self, db: AsyncSession, event: SecurityEventCreate, now: datetime) -> None:
        if self.security is not None:
            self.security.add_event(db, event, now)

    async def _log(
        self,
        identifier: Identifier,
        event_type: SecurityEventType,
        verification_type: VerificationType,
        extra: Optional[dict] = None,
    ) -> None:
        if self.security is None:
            return
        metadata = {"verification_type": verification_type.value, **(extra or {})}
        await self.security.log_event(SecurityEventCreate.for_identifier(identifier, event_type, metadata=metadata))

    # ------------------------------------------------------------------
    # 审计查询
    # ------------------------------------------------------------------

    async def get_codes(
        self,
        identifier: Identifier,
        verification_type: Optional[VerificationType] = None,
    ) -> List[VerificationCodeRecord]:
        """标识的全部验证码（含已过期、已作废），按创建时间倒序"""
        query = select(VerificationCode).where(identifier.matches(VerificationCode))
        if verification_type is not None:
            query = query.where(VerificationCode.type == verification_type.value)
        query = query.order_by(VerificationCode.created_at.desc())
        try:
            async with self.session_factory() as db:
                result = await db.execute(query)
                return [VerificationCodeRecord.model_validate(c) for c in result.scalars().all()]
        except SQLAlchemyError:
            logger.error("Failed to query verification codes", exc_info=True)
            return []

    async def get_expired_codes(self, identifier: Optional[Identifier] = None) -> List[VerificationCodeRecord]:
        query = select(VerificationCode).where(VerificationCode.expires_at < self.clock())
        if identifier is not None:
            query = query.where(identifier.matches(VerificationCode))
        query = query.order_by(VerificationCode.expires_at.desc())
        try:
            async with self.session_factory() as db:
                result = await db.execute(query)
                return [VerificationCodeRecord.model_validate(c) for c in result.scalars().all()]
        except SQLAlchemyError:
            logger.error("Failed to query expired verification codes", exc_info=True)
            return []

    async def get_code_statistics(self, identifier: Identifier) -> CodeStatistics:
        now = self.clock()
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(VerificationCode).where(identifier.matches(VerificationCode))
                )
                rows = result.scalars().all()
        except SQLAlchemyError:
            logger.error("Failed to load verification code statistics", exc_info=True)
            return CodeStatistics()

        return CodeStatistics(
            total=len(rows),
            verified=sum(1 for c in rows if c.verified),
            expired=sum(1 for c in rows if not c.verified and codes.is_expired(c.expires_at, now)),
            invalidated=sum(1 for c in rows if c.invalidated),
            pending=sum(
                1 for c in rows
                if not c.verified and not c.invalidated and not codes.is_expired(c.expires_at, now)
            ),
        )

    async def invalidate_code(self, code_id: str) -> None:
        """
        按 ID 作废验证码

        Raises:
            RecordNotFoundError: 验证码不存在
            SQLAlchemyError: 存储异常直接抛出，由调用方处理重试
        """
        async with self.session_factory() as db:
            record = await db.get(VerificationCode, code_id)
            if record is None:
                raise RecordNotFoundError(f"verification code {code_id} not found")
            record.invalidated = True
            record.updated_at = self.clock()
            await db.commit()

    # ------------------------------------------------------------------

    async def _get_pending(self, db: AsyncSession, email: str) -> Optional[PendingRegistration]:
        result = await db.execute(select(PendingRegistration).where(PendingRegistration.email == email))
        return result.scalar_one_or_none()

    async def _email_taken(self, db: AsyncSession, email: str, exclude_user_id: Optional[str]) -> bool:
        query = select(func.count(User.id)).where(User.email == email)
        if exclude_user_id is not None:
            query = query.where(User.id != exclude_user_id)
        result = await db.execute(query)
        return (result.scalar() or 0) > 0

    def _issue_failed(self, outcome: Outcome) -> IssueResult:
        return IssueResult(success=False, message=format_message(outcome.value), outcome=outcome)

    def _rejected(self, verification_type: VerificationType, outcome: Outcome, **details) -> ValidationResult:
        VALIDATION_OUTCOMES.labels(type=verification_type.value, outcome=outcome.value).inc()
        return ValidationResult(
            success=False,
            message=format_message(outcome.value, **details),
            outcome=outcome,
            remaining_attempts=details.get("attempts"),
        )
