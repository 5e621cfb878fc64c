"""
用户与验证请求相关 Schemas
"""
from pydantic import BaseModel, EmailStr, Field, field_validator
from datetime import datetime
from typing import Optional

CODE_PATTERN = r"^\d{6}$"
PHONE_PATTERN = r"^\+?[0-9 ()-]{6,20}$"


def _clean_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("姓名不能为空")
    if "<" in cleaned or ">" in cleaned:
        raise ValueError("姓名包含非法字符")
    return cleaned


class RegisterRequest(BaseModel):
    """注册请求（发送注册验证码）"""
    email: EmailStr
    password: str
    name: str = Field(max_length=100)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _clean_name(value)


class VerifyEmailRequest(BaseModel):
    """注册验证码校验请求"""
    email: EmailStr
    code: str = Field(pattern=CODE_PATTERN)


class ResendCodeRequest(BaseModel):
    """重新发送注册验证码"""
    email: EmailStr


class ChangeEmailRequest(BaseModel):
    new_email: EmailStr


class ChangePhoneRequest(BaseModel):
    new_phone: str = Field(pattern=PHONE_PATTERN)


class VerifyCodeRequest(BaseModel):
    """修改邮箱 / 手机号的验证码校验请求"""
    code: str = Field(pattern=CODE_PATTERN)


class ChangePasswordRequest(BaseModel):
    """修改密码请求"""
    old_password: str
    new_password: str


class AccountResponse(BaseModel):
    """对外暴露的账户信息"""
    id: str
    email: str
    name: str
    phone: Optional[str] = None
    email_verified: bool = False
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    """注册成功后的令牌响应"""
    success: bool = True
    message: str
    access_token: str
    token_type: str = "bearer"
    user: AccountResponse
