"""Background job infrastructure: Celery app and in-process periodic jobs."""
from .config.celery import celery_app
from .scheduler import PeriodicJob

__all__ = ["celery_app", "PeriodicJob"]
