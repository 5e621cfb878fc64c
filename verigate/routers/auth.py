"""
认证路由：注册验证码发送、校验、重发
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status

from verigate.config import get_settings
from verigate.dependencies import Services, get_services
from verigate.models.verification_code import VerificationType
from verigate.routers.common import (
    ensure_can_send,
    ensure_not_locked,
    finish_issue,
    record_validation,
)
from verigate.schemas.user import (
    RegisterRequest,
    ResendCodeRequest,
    TokenResponse,
    VerifyEmailRequest,
)
from verigate.utils.identifier import Identifier
from verigate.utils.security import create_access_token, get_password_hash

router = APIRouter()
settings = get_settings()


@router.post("/register")
async def register(
    data: RegisterRequest,
    request: Request,
    services: Services = Depends(get_services),
):
    """暂存注册信息并发送邮箱验证码"""
    if len(data.password) < settings.password_min_length:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"密码长度至少 {settings.password_min_length} 位",
        )

    identifier = Identifier.by_email(data.email)
    await ensure_not_locked(services, identifier)
    await ensure_can_send(services, identifier, request)

    result = await services.verification.issue_registration_code(
        data.email,
        get_password_hash(data.password),
        data.name,
        data.phone,
    )
    return await finish_issue(services, identifier, result)


@router.post("/verify-email", response_model=TokenResponse)
async def verify_email(
    data: VerifyEmailRequest,
    request: Request,
    services: Services = Depends(get_services),
):
    """校验注册验证码，成功后创建账户并返回令牌"""
    identifier = Identifier.by_email(data.email)
    await ensure_not_locked(services, identifier)

    result = await services.verification.validate_registration_code(data.email, data.code)
    await record_validation(services, identifier, VerificationType.EMAIL_REGISTRATION, result, request)

    return TokenResponse(
        message=result.message,
        access_token=create_access_token({"sub": result.account.id}),
        user=result.account,
    )


@router.post("/resend-email-code")
async def resend_email_code(
    data: ResendCodeRequest,
    request: Request,
    services: Services = Depends(get_services),
):
    """重新发送注册验证码"""
    identifier = Identifier.by_email(data.email)
    await ensure_not_locked(services, identifier)
    await ensure_can_send(services, identifier, request)

    result = await services.verification.resend_registration_code(data.email)
    return await finish_issue(services, identifier, result)
