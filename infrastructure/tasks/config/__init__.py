from .beat import CELERY_BEAT_SCHEDULE
from .celery import CALLBACK_QUEUE, MAINTENANCE_QUEUE, celery_app

__all__ = ["celery_app", "CELERY_BEAT_SCHEDULE", "CALLBACK_QUEUE", "MAINTENANCE_QUEUE"]
