"""
Celery 应用配置

队列：
- cleanup: 验证数据清理队列
"""
import os
from celery import Celery
from celery.schedules import crontab

from verigate.config import get_settings

settings = get_settings()

# Redis 配置
broker_url = settings.celery_broker or settings.redis_url
backend_url = settings.celery_backend or settings.redis_url

celery_app = Celery(
    "verigate",
    broker=broker_url,
    backend=backend_url,
    include=[
        "verigate.tasks.cleanup_tasks",
    ]
)

# Celery 配置
celery_app.conf.update(
    # 任务结果过期时间（1天）
    result_expires=86400,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # 时区（定时任务按东八区执行）
    timezone=settings.celery_timezone,
    enable_utc=True,
    task_time_limit=1800,
    task_soft_time_limit=1500,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "verigate.tasks.cleanup_tasks.*": {"queue": "cleanup"},
    },
    task_reject_on_worker_lost=True,
    # 三个清理任务错开执行，避免互相争用
    beat_schedule={
        "cleanup-verification-codes-daily": {
            "task": "verigate.tasks.cleanup_tasks.cleanup_verification_codes_task",
            "schedule": crontab(hour=settings.cleanup_codes_hour, minute=0),
        },
        "release-expired-lockouts-daily": {
            "task": "verigate.tasks.cleanup_tasks.release_expired_lockouts_task",
            "schedule": crontab(hour=settings.cleanup_lockouts_hour, minute=0),
        },
        "cleanup-pending-registrations-daily": {
            "task": "verigate.tasks.cleanup_tasks.cleanup_pending_registrations_task",
            "schedule": crontab(hour=settings.cleanup_pending_hour, minute=0),
        },
    },
)

# Worker 配置
celery_app.conf.worker_max_tasks_per_child = 1000
celery_app.conf.worker_concurrency = os.cpu_count() or 4

if __name__ == "__main__":
    celery_app.start()
