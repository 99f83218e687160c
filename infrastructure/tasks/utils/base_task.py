"""Celery base task with structlog lifecycle events."""
from __future__ import annotations

from celery import Task

from core.logging_config import get_logger

logger = get_logger(__name__)


def _task_fields(task: Task, task_id: str, args) -> dict:
    fields = {"task_id": task_id, "task_name": task.name, "retries": task.request.retries}
    # apply_callback(channel, raw)：只记渠道，原始回调可能含签名
    if args and isinstance(args[0], str):
        fields["channel"] = args[0]
    return fields


class BaseTask(Task):
    def on_retry(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.warning("celery_task_retry", error=str(exc), **_task_fields(self, task_id, args))
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error("celery_task_failure", error=str(exc), **_task_fields(self, task_id, args))
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        outcome = retval.get("status") if isinstance(retval, dict) else None
        logger.info("celery_task_success", outcome=outcome, **_task_fields(self, task_id, args))
        super().on_success(retval, task_id, args, kwargs)
