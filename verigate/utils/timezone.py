"""
统一时间处理模块

约定：
- 数据库存储 UTC 时间（不带时区信息的 naive datetime）
- 所有服务通过可注入的 clock 获取当前时间，默认使用 utc_now_naive
"""
from datetime import datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo

# 东八区时区（定时任务与展示使用）
CHINA_TZ = ZoneInfo("Asia/Shanghai")

Clock = Callable[[], datetime]


def utc_now_naive() -> datetime:
    """
    获取当前 UTC 时间（naive，不带时区信息）

    这是数据库存储的标准格式，与 datetime.utcnow() 等效
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """
    将任意时间转换为 UTC 时间（naive）
    """
    if dt.tzinfo is None:
        # 已经是 naive，假设是 UTC
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def format_china_time(dt: datetime, fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    """
    格式化时间为北京时间字符串（用于通知邮件）
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(CHINA_TZ).strftime(fmt) + " (UTC+8)"
