"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from typing import Any

from core.logging_config import get_logger
from ..config.celery import CALLBACK_QUEUE, MAINTENANCE_QUEUE
from ..tasks.billing import apply_callback, run_reconciliation

logger = get_logger(__name__)


class TaskDispatcher:
    """Internal facade used by the API layer to schedule tasks."""

    def enqueue_callback(self, channel: str, raw: dict[str, Any]) -> str:
        """Hand a callback to the worker after in-process retries ran out."""
        result = apply_callback.apply_async(args=(channel, dict(raw)), queue=CALLBACK_QUEUE)
        logger.info("callback_enqueued", channel=channel, task_id=result.id)
        return result.id

    def enqueue_reconciliation(self) -> str:
        result = run_reconciliation.apply_async(queue=MAINTENANCE_QUEUE)
        logger.info("reconciliation_enqueued", task_id=result.id)
        return result.id
