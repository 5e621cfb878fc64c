"""
验证数据清理任务

- 02:00 清理超过 24 小时的验证码
- 03:00 解除已到期的账户锁定
- 04:00 清理过期的待验证注册
"""
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from verigate.celery_app import celery_app
from verigate.tasks.base import record_task_result, run_async

logger = logging.getLogger(__name__)

Sweep = Callable[[AsyncSession], Awaitable[Dict[str, Any]]]


def _run_sweep(task_id: str, task_name: str, sweep: Sweep) -> Dict[str, Any]:
    from verigate.database import AsyncSessionLocal

    start_time = datetime.now()
    logger.info(f"[{task_id}] 开始执行 {task_name}")

    async def run():
        async with AsyncSessionLocal() as db:
            return await sweep(db)

    try:
        result = run_async(run)
    except Exception as e:
        logger.error(f"[{task_id}] {task_name} 失败: {e}")
        record_task_result(
            task_id=task_id,
            task_name=task_name,
            status="failed",
            error=str(e),
            duration=(datetime.now() - start_time).total_seconds(),
        )
        raise

    return record_task_result(
        task_id=task_id,
        task_name=task_name,
        status="failed" if "error" in result else "success",
        result=result,
        error=result.get("error"),
        duration=(datetime.now() - start_time).total_seconds(),
    )


@celery_app.task(
    name="verigate.tasks.cleanup_tasks.cleanup_verification_codes_task",
    bind=True,
)
def cleanup_verification_codes_task(self, dry_run: bool = False) -> Dict[str, Any]:
    """清理创建超过保留期的验证码"""
    from verigate.config import get_settings
    from verigate.services.verification_cleanup import purge_stale_codes

    retention_hours = get_settings().verification_code_retention_hours
    return _run_sweep(
        self.request.id,
        "cleanup_verification_codes",
        lambda db: purge_stale_codes(db, dry_run=dry_run, retention_hours=retention_hours),
    )


@celery_app.task(
    name="verigate.tasks.cleanup_tasks.release_expired_lockouts_task",
    bind=True,
)
def release_expired_lockouts_task(self, dry_run: bool = False) -> Dict[str, Any]:
    """解除已到期的账户锁定"""
    from verigate.services.verification_cleanup import release_expired_lockouts

    return _run_sweep(
        self.request.id,
        "release_expired_lockouts",
        lambda db: release_expired_lockouts(db, dry_run=dry_run),
    )


@celery_app.task(
    name="verigate.tasks.cleanup_tasks.cleanup_pending_registrations_task",
    bind=True,
)
def cleanup_pending_registrations_task(self, dry_run: bool = False) -> Dict[str, Any]:
    """清理过期的待验证注册"""
    from verigate.services.verification_cleanup import purge_expired_pending_registrations

    return _run_sweep(
        self.request.id,
        "cleanup_pending_registrations",
        lambda db: purge_expired_pending_registrations(db, dry_run=dry_run),
    )
