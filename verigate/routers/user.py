"""
用户路由：修改邮箱、修改手机号、修改密码
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status

from verigate.config import get_settings
from verigate.dependencies import Services, get_services
from verigate.errors import VerificationError
from verigate.models.verification_code import VerificationType
from verigate.routers.common import (
    ensure_can_send,
    ensure_not_locked,
    finish_issue,
    get_client_ip,
    get_user_agent,
    record_validation,
)
from verigate.schemas.user import (
    ChangeEmailRequest,
    ChangePasswordRequest,
    ChangePhoneRequest,
    VerifyCodeRequest,
)
from verigate.utils.identifier import Identifier
from verigate.utils.security import get_current_user_id

router = APIRouter()
settings = get_settings()


@router.post("/change-email")
async def change_email(
    data: ChangeEmailRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """向新邮箱发送验证码"""
    identifier = Identifier.by_user(user_id)
    await ensure_not_locked(services, identifier)
    await ensure_can_send(services, identifier, request)

    result = await services.verification.issue_email_change_code(user_id, data.new_email)
    return await finish_issue(services, identifier, result)


@router.post("/verify-email-change")
async def verify_email_change(
    data: VerifyCodeRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    identifier = Identifier.by_user(user_id)
    await ensure_not_locked(services, identifier)

    result = await services.verification.validate_email_change_code(user_id, data.code)
    await record_validation(services, identifier, VerificationType.EMAIL_CHANGE, result, request)
    return {"success": True, "message": result.message, "user": result.account}


@router.post("/change-phone")
async def change_phone(
    data: ChangePhoneRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """验证码发送到当前邮箱"""
    identifier = Identifier.by_user(user_id)
    await ensure_not_locked(services, identifier)
    await ensure_can_send(services, identifier, request)

    result = await services.verification.issue_phone_change_code(user_id, data.new_phone)
    return await finish_issue(services, identifier, result)


@router.post("/verify-phone-change")
async def verify_phone_change(
    data: VerifyCodeRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    identifier = Identifier.by_user(user_id)
    await ensure_not_locked(services, identifier)

    result = await services.verification.validate_phone_change_code(user_id, data.code)
    await record_validation(services, identifier, VerificationType.PHONE_CHANGE, result, request)
    return {"success": True, "message": result.message, "user": result.account}


@router.post("/change-password")
async def change_password(
    data: ChangePasswordRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """修改密码并发送确认邮件"""
    if len(data.new_password) < settings.password_min_length:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"密码长度至少 {settings.password_min_length} 位",
        )

    result = await services.account.change_password(
        user_id,
        data.old_password,
        data.new_password,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    if not result.success:
        raise VerificationError(result.outcome, message=result.message)
    return {"success": True, "message": result.message}
