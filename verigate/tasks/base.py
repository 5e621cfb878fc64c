"""
Celery 任务基础工具

提供：
- 在 worker 中运行异步函数
- 任务结果记录
"""
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from asgiref.sync import async_to_sync

logger = logging.getLogger(__name__)


def run_async(func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
    """
    在同步上下文中运行异步函数

    使用 asgiref.sync.async_to_sync 避免与 worker 的事件循环冲突
    """
    return async_to_sync(func)(*args, **kwargs)


def record_task_result(
    task_id: str,
    task_name: str,
    status: str,
    result: Optional[Any] = None,
    error: Optional[str] = None,
    duration: float = 0,
) -> Dict[str, Any]:
    """
    记录任务执行结果

    Args:
        task_id: 任务ID
        task_name: 任务名称
        status: 任务状态 (success/failed)
        result: 任务结果
        error: 错误信息
        duration: 执行时长（秒）

    Returns:
        任务结果字典
    """
    log_data = {
        "task_id": task_id,
        "task_name": task_name,
        "status": status,
        "duration": f"{duration:.2f}s",
        "timestamp": datetime.now().isoformat(),
    }

    if error:
        log_data["error"] = error
        logger.error(f"Task failed: {log_data}")
    else:
        log_data["result"] = result
        logger.info(f"Task completed: {log_data}")

    return log_data
