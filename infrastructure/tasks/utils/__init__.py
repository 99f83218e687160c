"""Utility helpers for Celery tasks."""
from .base_task import BaseTask
from .dispatcher import TaskDispatcher

__all__ = ["TaskDispatcher", "BaseTask"]
