"""Celery app for deferred callbacks and scheduled reconciliation."""
from __future__ import annotations

import os

from celery import Celery
from kombu import Exchange, Queue

from core.config import settings
from core.logging_config import get_logger
from .beat import CELERY_BEAT_SCHEDULE


logger = get_logger(__name__)

CALLBACK_QUEUE = "billing.callbacks"
MAINTENANCE_QUEUE = "billing.maintenance"

_billing = Exchange("billing", type="direct")

celery_app = Celery("tuition_settlement")
celery_app.conf.update(
    broker_url=settings.redis.url or os.getenv("CELERY_BROKER_URL"),
    result_backend=settings.redis.url or os.getenv("CELERY_RESULT_BACKEND"),
    imports=("infrastructure.tasks.tasks",),
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # 回调落库后才 ack，worker 丢失时由 broker 重投
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=24 * 3600,
    task_default_queue=CALLBACK_QUEUE,
    task_queues=(
        Queue(CALLBACK_QUEUE, _billing, routing_key="callbacks"),
        Queue(MAINTENANCE_QUEUE, _billing, routing_key="maintenance"),
    ),
    task_routes={
        "billing.apply_callback": {"queue": CALLBACK_QUEUE, "routing_key": "callbacks"},
        "billing.run_reconciliation": {"queue": MAINTENANCE_QUEUE, "routing_key": "maintenance"},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
)

# 开发/测试环境没有 broker，任务在调用方进程内同步执行
if (settings.ENVIRONMENT or "production").lower() in {"development", "dev", "test", "testing"}:
    celery_app.conf.task_always_eager = True


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker=sender.conf.broker_url,
        eager=bool(sender.conf.task_always_eager),
        queues=[q.name for q in sender.conf.task_queues],
    )
