"""Celery beat schedule configuration.

The reconciliation tick runs at the configured interval, which defaults to
the stuck-transaction expiration window.
"""
from __future__ import annotations

from core.config import settings

RECONCILIATION_QUEUE = "reconciliation"

CELERY_BEAT_SCHEDULE = {
    "ledger-reconcile-stuck-transactions": {
        "task": "ledger.reconcile_stuck_transactions",
        "schedule": float(settings.reconciliation.effective_interval),
        "options": {"queue": RECONCILIATION_QUEUE, "expires": float(settings.reconciliation.effective_interval)},
    },
}
