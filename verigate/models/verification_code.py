"""
验证码模型
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import String, Boolean, Integer, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from verigate.database import Base


class VerificationType(str, Enum):
    """验证码用途"""
    EMAIL_REGISTRATION = "email_registration"  # 注册
    EMAIL_CHANGE = "email_change"              # 修改邮箱
    PHONE_CHANGE = "phone_change"              # 修改手机号


class VerificationCode(Base):
    """验证码表（只存哈希，不存明文）"""
    __tablename__ = "verification_codes"
    __table_args__ = (
        Index("ix_verification_codes_email_type", "email", "type"),
        Index("ix_verification_codes_user_type", "user_id", "type"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    target: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # 新邮箱或新手机号
    type: Mapped[str] = mapped_column(String(32))
    code_hash: Mapped[str] = mapped_column(String(255))
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    invalidated: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
