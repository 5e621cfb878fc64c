"""验证流程的结果码、提示文案与异常。"""

from enum import Enum
from typing import Any, Dict, Optional

from fastapi import status


class Outcome(str, Enum):
    """验证相关操作的结果码（对外契约只依赖结果码，不依赖文案）。"""

    SUCCESS = "success"
    NOT_FOUND = "not_found"  # 没有可用的验证码
    EXPIRED = "expired"  # 验证码已过期
    INVALIDATED = "invalidated"  # 尝试次数耗尽或被新验证码取代
    INCORRECT = "incorrect"  # 验证码错误，附带剩余次数
    RATE_LIMITED = "rate_limited"  # 发送过于频繁，附带等待分钟数
    LOCKED = "locked"  # 标识当前被锁定
    STORAGE_FAILURE = "storage_failure"  # 存储层异常
    USER_NOT_FOUND = "user_not_found"
    EMAIL_IN_USE = "email_in_use"
    INVALID_PASSWORD = "invalid_password"


MESSAGES: Dict[str, str] = {
    "code_sent": "验证码已发送，请查收邮箱",
    "send_failed": "验证码发送失败，请稍后重试",
    "verification_success": "验证成功",
    "email_changed": "邮箱修改成功",
    "phone_changed": "手机号修改成功",
    "password_changed": "密码修改成功，确认邮件已发送",
    Outcome.NOT_FOUND.value: "验证码不存在",
    Outcome.EXPIRED.value: "验证码已过期，请重新获取",
    Outcome.INVALIDATED.value: "验证码错误次数过多，已失效",
    Outcome.INCORRECT.value: "验证码错误，还剩 {attempts} 次尝试机会",
    Outcome.RATE_LIMITED.value: "请求过于频繁，请 {minutes} 分钟后再试",
    Outcome.LOCKED.value: "验证失败次数过多，账户已被临时锁定，请 1 小时后重试",
    Outcome.STORAGE_FAILURE.value: "服务暂时不可用，请稍后重试",
    Outcome.USER_NOT_FOUND.value: "用户不存在",
    Outcome.EMAIL_IN_USE.value: "该邮箱已被注册",
    Outcome.INVALID_PASSWORD.value: "当前密码错误",
}

OUTCOME_STATUS_CODES: Dict[Outcome, int] = {
    Outcome.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    Outcome.EXPIRED: status.HTTP_400_BAD_REQUEST,
    Outcome.INVALIDATED: status.HTTP_400_BAD_REQUEST,
    Outcome.INCORRECT: status.HTTP_400_BAD_REQUEST,
    Outcome.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    Outcome.LOCKED: status.HTTP_423_LOCKED,
    Outcome.STORAGE_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
    Outcome.USER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    Outcome.EMAIL_IN_USE: status.HTTP_409_CONFLICT,
    Outcome.INVALID_PASSWORD: status.HTTP_400_BAD_REQUEST,
}


def format_message(key: str, **values: Any) -> str:
    """取出提示文案并填充 {attempts} / {minutes} 等占位符。"""
    message = MESSAGES.get(key, MESSAGES[Outcome.STORAGE_FAILURE.value])
    for name, value in values.items():
        message = message.replace("{" + name + "}", str(value))
    return message


def get_status_code(outcome: Outcome) -> int:
    return OUTCOME_STATUS_CODES.get(outcome, status.HTTP_500_INTERNAL_SERVER_ERROR)


class VerificationError(Exception):
    """接口层抛出的验证错误，由全局异常处理器渲染。"""

    def __init__(
        self,
        outcome: Outcome,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.outcome = outcome
        self.details = {k: v for k, v in (details or {}).items() if v is not None}
        self.message = message or format_message(outcome.value, **self.details)
        self.status_code = get_status_code(outcome)
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "code": self.outcome.value,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class StorageError(Exception):
    """存储后端（数据库 / Redis）失败。"""


class RecordNotFoundError(LookupError):
    """按 ID 操作的记录不存在。"""
