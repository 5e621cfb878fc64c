"""
Celery 任务模块

- cleanup_tasks: 验证码 / 锁定 / 待验证注册清理任务
"""
from verigate.celery_app import celery_app

__all__ = ["celery_app"]
