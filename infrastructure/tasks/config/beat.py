"""Celery beat schedule configuration.

Only active when ``REAPER__MODE=celery``; otherwise the API process runs the
sweep itself (see main.py) and beat must not schedule it a second time.
"""
from __future__ import annotations

from core.config import settings

CELERY_BEAT_SCHEDULE = {}

if settings.reaper.mode == "celery":
    CELERY_BEAT_SCHEDULE["reap-stale-orders"] = {
        "task": "orders.reap_stale",
        "schedule": float(settings.reaper.interval_seconds),
        "options": {"queue": "low", "expires": float(settings.reaper.interval_seconds)},
    }
