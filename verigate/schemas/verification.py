"""
验证码流程结果 Schemas
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from verigate.errors import Outcome
from verigate.schemas.user import AccountResponse


class IssueResult(BaseModel):
    """发送验证码结果"""
    success: bool
    message: str
    outcome: Outcome = Outcome.SUCCESS
    pending_id: Optional[str] = None


class ValidationResult(BaseModel):
    """校验验证码结果"""
    success: bool
    message: str
    outcome: Outcome
    account: Optional[AccountResponse] = None
    remaining_attempts: Optional[int] = None


class RateLimitResult(BaseModel):
    """频率限制检查结果"""
    allowed: bool
    remaining_attempts: int
    reset_time: Optional[datetime] = None
    wait_minutes: Optional[int] = None


class VerificationCodeRecord(BaseModel):
    """审计用验证码记录（不含哈希）"""
    id: str
    email: Optional[str] = None
    user_id: Optional[str] = None
    target: Optional[str] = None
    type: str
    attempts: int
    max_attempts: int
    expires_at: datetime
    verified: bool
    verified_at: Optional[datetime] = None
    invalidated: bool
    created_at: datetime

    class Config:
        from_attributes = True


class CodeStatistics(BaseModel):
    total: int = 0
    verified: int = 0
    expired: int = 0
    invalidated: int = 0
    pending: int = 0
