"""Deferred settlement work: queued gateway callbacks and periodic reconciliation."""
from .config.celery import celery_app
from .utils.dispatcher import TaskDispatcher

__all__ = ["celery_app", "TaskDispatcher"]
