"""
数据库模型
"""
from verigate.models.user import User
from verigate.models.pending_registration import PendingRegistration
from verigate.models.verification_code import VerificationCode, VerificationType
from verigate.models.rate_limit import RateLimitAttempt
from verigate.models.account_lockout import AccountLockout
from verigate.models.security_log import SecurityLog, SecurityEventType

__all__ = [
    "User",
    "PendingRegistration",
    "VerificationCode",
    "VerificationType",
    "RateLimitAttempt",
    "AccountLockout",
    "SecurityLog",
    "SecurityEventType",
]
