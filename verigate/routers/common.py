"""
验证码接口的公共检查：频率限制、锁定、验证结果记录
"""
from typing import Optional

from fastapi import Request

from verigate.dependencies import Services
from verigate.errors import Outcome, VerificationError
from verigate.models.security_log import SecurityEventType
from verigate.models.verification_code import VerificationType
from verigate.schemas.security import SecurityEventCreate
from verigate.schemas.verification import IssueResult, ValidationResult
from verigate.utils.identifier import Identifier


def get_client_ip(request: Request) -> Optional[str]:
    # X-Forwarded-For 可能包含多个 IP，取第一个
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_user_agent(request: Request) -> Optional[str]:
    user_agent = request.headers.get("User-Agent")
    return user_agent[:255] if user_agent else None


async def ensure_not_locked(services: Services, identifier: Identifier) -> None:
    if await services.security.is_locked(identifier):
        raise VerificationError(Outcome.LOCKED)


async def ensure_can_send(services: Services, identifier: Identifier, request: Request) -> None:
    """发送验证码前检查频率限制，超限时记录安全事件"""
    result = await services.rate_limit.check_limit(identifier)
    if result.allowed:
        return

    await services.security.log_event(SecurityEventCreate.for_identifier(
        identifier,
        SecurityEventType.RATE_LIMIT_EXCEEDED,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        metadata={"wait_minutes": result.wait_minutes},
    ))
    raise VerificationError(Outcome.RATE_LIMITED, details={"minutes": result.wait_minutes})


async def finish_issue(services: Services, identifier: Identifier, result: IssueResult) -> dict:
    if not result.success:
        raise VerificationError(result.outcome, message=result.message)
    await services.rate_limit.record_attempt(identifier)
    return {"success": True, "message": result.message}


async def record_validation(
    services: Services,
    identifier: Identifier,
    verification_type: VerificationType,
    result: ValidationResult,
    request: Request,
) -> None:
    """记录验证结果，失败时抛出对应错误"""
    if result.outcome is not Outcome.STORAGE_FAILURE:
        await services.security.record_verification_attempt(
            identifier,
            verification_type,
            result.success,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )
    if not result.success:
        raise VerificationError(
            result.outcome,
            message=result.message,
            details={"remaining_attempts": result.remaining_attempts},
        )
