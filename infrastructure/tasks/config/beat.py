"""Celery beat schedule configuration.

Reconciliation is re-runnable, so the interval only bounds how long a missing
snapshot or a stuck payment can survive.
"""
from __future__ import annotations

from core.config import settings

CELERY_BEAT_SCHEDULE = {
    "billing-reconciliation": {
        "task": "billing.run_reconciliation",
        "schedule": float(settings.billing.reconciliation_interval_seconds),
        "options": {"queue": "billing.maintenance"},
    },
}
