"""
邮件通知服务 - SMTP

对外提供 notify(address, template, data) -> delivered | failed，
验证码服务与安全服务都通过构造参数注入通知器。
"""
import asyncio
import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from verigate.config import Settings, get_settings

logger = logging.getLogger(__name__)


class NotificationTemplate(str, Enum):
    """通知模板"""
    REGISTRATION_VERIFICATION = "registration_verification"
    EMAIL_CHANGE_VERIFICATION = "email_change_verification"
    EMAIL_CHANGE_NOTIFICATION = "email_change_notification"
    PHONE_CHANGE_VERIFICATION = "phone_change_verification"
    PASSWORD_CHANGE_NOTIFICATION = "password_change_notification"
    ACCOUNT_LOCKOUT_NOTIFICATION = "account_lockout_notification"


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


class Notifier(Protocol):
    async def notify(
        self,
        address: str,
        template: NotificationTemplate,
        data: Dict[str, Any],
    ) -> DeliveryStatus:
        ...


def sanitize_email(email: str) -> str:
    """清理邮箱地址用于日志记录，防止日志注入"""
    if not email:
        return "(empty)"
    return "".join(char for char in email if char.isprintable())[:100]


def send_email(to_email: str, subject: str, html_content: str, settings: Settings) -> bool:
    """
    发送邮件 (同步方法，在线程中调用)
    """
    if not settings.smtp_configured():
        logger.warning("Email service not configured, skipping send")
        return False

    try:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{settings.email_from_name} <{settings.smtp_user}>"
        msg["To"] = to_email

        if settings.email_reply_to:
            msg["Reply-To"] = settings.email_reply_to

        msg.attach(MIMEText(html_content, "html", "utf-8"))

        if settings.smtp_port == 465:
            server = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=20)
        else:
            server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=20)
            server.ehlo()
            server.starttls()
            server.ehlo()

        with server:
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.smtp_user, [to_email], msg.as_string())

        logger.info("Email sent successfully to %s", sanitize_email(to_email))
        return True
    except (smtplib.SMTPException, OSError) as e:
        # 不记录完整的异常信息，避免泄露敏感配置（如密码）
        logger.error("Failed to send email to %s: %s", sanitize_email(to_email), type(e).__name__)
        return False


# ============================================================================
# 邮件组件（内联样式）
# ============================================================================

_FONT = "font-family: 'Helvetica Neue', Helvetica, Arial, sans-serif;"


def _layout(title: str, subtitle: str, body: str, accent: str = "#2563eb") -> str:
    return f"""
<!DOCTYPE html>
<html>
<head><meta http-equiv="Content-Type" content="text/html; charset=UTF-8" /></head>
<body style="margin: 0; padding: 0; background-color: #f5f5f5;">
<table width="100%" cellpadding="0" cellspacing="0" role="presentation" style="padding: 20px;">
    <tr>
        <td align="center">
            <table width="500" cellpadding="0" cellspacing="0" role="presentation" style="background-color: #ffffff; border-radius: 16px;">
                <tr>
                    <td align="center" style="background-color: {accent}; padding: 32px 24px; border-radius: 16px 16px 0 0;">
                        <h1 style="margin: 0; {_FONT} font-size: 22px; color: #ffffff;">{title}</h1>
                        <p style="margin: 6px 0 0; {_FONT} font-size: 14px; color: rgba(255,255,255,0.9);">{subtitle}</p>
                    </td>
                </tr>
                <tr>
                    <td style="padding: 32px 24px; {_FONT} font-size: 14px; line-height: 20px; color: #4b5563;">
                        {body}
                        <p style="margin: 24px 0 0; font-size: 12px; color: #9ca3af; text-align: center;">此邮件由系统自动发送，请勿直接回复</p>
                    </td>
                </tr>
            </table>
        </td>
    </tr>
</table>
</body>
</html>
"""


def _code_box(code: str, expire_minutes: int) -> str:
    return f"""
<table width="100%" cellpadding="0" cellspacing="0" role="presentation" style="margin: 24px 0;">
    <tr>
        <td align="center" style="background-color: #eff6ff; border: 2px dashed #2563eb; border-radius: 12px; padding: 24px;">
            <p style="margin: 0; font-family: 'Courier New', Courier, monospace; font-size: 36px; font-weight: 700; color: #1f2937; letter-spacing: 8px;">{html.escape(code)}</p>
            <p style="margin: 12px 0 0; font-size: 12px; color: #6b7280;">有效期 {expire_minutes} 分钟，请勿告知他人</p>
        </td>
    </tr>
</table>
"""


def _rows(items: Dict[str, Any]) -> str:
    rows = "".join(
        f"<tr><td style=\"padding: 4px 12px 4px 0; color: #6b7280;\">{html.escape(label)}</td>"
        f"<td style=\"padding: 4px 0; color: #1f2937;\">{html.escape(str(value))}</td></tr>"
        for label, value in items.items()
    )
    return f"<table cellpadding=\"0\" cellspacing=\"0\" role=\"presentation\" style=\"margin: 16px 0;\">{rows}</table>"


def _code_email(title: str, intro: str) -> Callable[[Dict[str, Any]], Tuple[str, str]]:
    def render(data: Dict[str, Any]) -> Tuple[str, str]:
        body = f"<p>{intro}</p>" + _code_box(data["code"], data.get("expire_minutes", 15))
        body += "<p>如果这不是您本人的操作，请忽略此邮件。</p>"
        return f"【Verigate】{title}", _layout(title, "验证码邮件", body)
    return render


def _render_email_change_notification(data: Dict[str, Any]) -> Tuple[str, str]:
    body = "<p>我们收到了修改您账户邮箱的请求。</p>"
    body += _rows({"新邮箱": data.get("new_email", "")})
    body += "<p>如果这不是您本人的操作，请立即修改密码并联系客服。</p>"
    return "【Verigate】邮箱修改提醒", _layout("邮箱修改提醒", "账户安全通知", body, "#f59e0b")


def _render_password_change_notification(data: Dict[str, Any]) -> Tuple[str, str]:
    body = "<p>您的账户密码刚刚被修改。</p>"
    body += _rows({
        "时间": data.get("timestamp", ""),
        "IP 地址": data.get("ip_address") or "未知",
        "设备": data.get("device") or "未知设备",
    })
    body += "<p>如果这不是您本人的操作，请立即重置密码。</p>"
    return "【Verigate】密码修改通知", _layout("密码已修改", "账户安全通知", body, "#f59e0b")


def _render_account_lockout_notification(data: Dict[str, Any]) -> Tuple[str, str]:
    body = "<p>由于多次验证失败，您的账户已被临时锁定。</p>"
    body += _rows({"解锁时间": data.get("expires_at", "")})
    body += "<p>锁定到期后将自动解锁。如非本人操作，请注意账户安全。</p>"
    return "【Verigate】账户临时锁定", _layout("账户已临时锁定", "账户安全通知", body, "#dc2626")


_RENDERERS: Dict[NotificationTemplate, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    NotificationTemplate.REGISTRATION_VERIFICATION: _code_email("邮箱验证码", "感谢您注册！请使用以下验证码完成注册："),
    NotificationTemplate.EMAIL_CHANGE_VERIFICATION: _code_email("新邮箱验证码", "请使用以下验证码确认您的新邮箱地址："),
    NotificationTemplate.PHONE_CHANGE_VERIFICATION: _code_email("手机号修改验证码", "请使用以下验证码确认修改手机号："),
    NotificationTemplate.EMAIL_CHANGE_NOTIFICATION: _render_email_change_notification,
    NotificationTemplate.PASSWORD_CHANGE_NOTIFICATION: _render_password_change_notification,
    NotificationTemplate.ACCOUNT_LOCKOUT_NOTIFICATION: _render_account_lockout_notification,
}


def render_template(template: NotificationTemplate, data: Dict[str, Any]) -> Tuple[str, str]:
    """返回 (subject, html)"""
    return _RENDERERS[template](data)


class EmailNotifier:
    """基于 SMTP 的通知器"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def notify(
        self,
        address: str,
        template: NotificationTemplate,
        data: Dict[str, Any],
    ) -> DeliveryStatus:
        subject, html_content = render_template(template, data)
        # smtplib 是阻塞调用
        sent = await asyncio.to_thread(send_email, address, subject, html_content, self.settings)
        return DeliveryStatus.DELIVERED if sent else DeliveryStatus.FAILED
