"""
账户服务 - 修改登录密码
"""
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from verigate.errors import Outcome, format_message
from verigate.models.security_log import SecurityEventType
from verigate.models.user import User
from verigate.schemas.security import SecurityEventCreate
from verigate.schemas.verification import IssueResult
from verigate.services.email_service import NotificationTemplate, Notifier
from verigate.services.security_service import SecurityService
from verigate.utils.security import describe_device, get_password_hash, verify_password
from verigate.utils.timezone import Clock, format_china_time, utc_now_naive

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        security: Optional[SecurityService] = None,
        clock: Clock = utc_now_naive,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.security = security
        self.clock = clock

    async def change_password(
        self,
        user_id: str,
        old_password: str,
        new_password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssueResult:
        """
        校验旧密码后更新密码，记录 password_changed 事件并发送通知邮件
        """
        now = self.clock()
        try:
            async with self.session_factory() as db:
                user = await db.get(User, user_id)
                if user is None:
                    return _failed(Outcome.USER_NOT_FOUND)
                if not verify_password(old_password, user.password_hash):
                    return _failed(Outcome.INVALID_PASSWORD)

                user.password_hash = get_password_hash(new_password)
                user.updated_at = now
                if self.security is not None:
                    self.security.add_event(db, SecurityEventCreate(
                        event_type=SecurityEventType.PASSWORD_CHANGED,
                        user_id=user.id,
                        email=user.email,
                        ip_address=ip_address,
                        user_agent=user_agent,
                    ), now)
                await db.commit()
                email = user.email
        except SQLAlchemyError:
            logger.error("Failed to change password for user %s", user_id, exc_info=True)
            return _failed(Outcome.STORAGE_FAILURE)

        try:
            await self.notifier.notify(email, NotificationTemplate.PASSWORD_CHANGE_NOTIFICATION, {
                "timestamp": format_china_time(now),
                "ip_address": ip_address,
                "device": describe_device(user_agent),
            })
        except Exception:
            logger.warning("Failed to send password change notification", exc_info=True)

        return IssueResult(success=True, message=format_message("password_changed"))


def _failed(outcome: Outcome) -> IssueResult:
    return IssueResult(success=False, message=format_message(outcome.value), outcome=outcome)
