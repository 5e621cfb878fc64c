"""
验证码发送频率记录
"""
import uuid
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from verigate.database import Base


class RateLimitAttempt(Base):
    """固定窗口计数：每个标识一条记录"""
    __tablename__ = "rate_limit_attempts"
    __table_args__ = (
        UniqueConstraint("identifier_type", "identifier", name="uq_rate_limit_identifier"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    identifier_type: Mapped[str] = mapped_column(String(16))
    identifier: Mapped[str] = mapped_column(String(255))
    attempts: Mapped[int] = mapped_column(Integer, default=1)
    window_start: Mapped[datetime] = mapped_column(DateTime)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
