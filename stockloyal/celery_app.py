"""Celery application configuration for background task processing.

Run worker: celery -A stockloyal.celery_app worker --loglevel=info
Run beat:   celery -A stockloyal.celery_app beat --loglevel=info
"""

from __future__ import annotations

import time as _time

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_failure, task_postrun, task_prerun

from stockloyal.common.config import get_settings
from stockloyal.common.metrics import CELERY_TASK_DURATION_SECONDS, CELERY_TASK_TOTAL

settings = get_settings()

celery_app = Celery(
    "stockloyal",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="America/New_York",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=600,  # sweep/journal runs touch many members
    task_time_limit=660,
    # Tasks live in scheduler.py, not tasks.py, so autodiscovery misses them
    include=["stockloyal.orders.scheduler"],
)

# ─── Beat Schedule ───
# Weekdays only; times are Eastern (see conf.timezone).

celery_app.conf.beat_schedule = {
    # First pass one minute after the open
    "process-orders-at-open": {
        "task": "stockloyal.orders.scheduler.process_scheduled_orders",
        "schedule": crontab(hour=9, minute=31, day_of_week="mon-fri"),
    },
    # Then every 5 minutes through the session; closed-market runs are no-ops
    "process-orders-every-5-min": {
        "task": "stockloyal.orders.scheduler.process_scheduled_orders",
        "schedule": crontab(minute="*/5", hour="9-15", day_of_week="mon-fri"),
    },
    "sweep-daily": {
        "task": "stockloyal.orders.scheduler.run_sweep",
        "schedule": crontab(hour=9, minute=0, day_of_week="mon-fri"),
    },
    # After the close, once the day's orders have settled into approved/paid
    "journal-daily": {
        "task": "stockloyal.orders.scheduler.run_journal",
        "schedule": crontab(hour=16, minute=30, day_of_week="mon-fri"),
    },
}


# ─── Prometheus Metrics via Celery Signals ───

_task_start_times: dict[str, float] = {}


def _short_name(sender) -> str:  # noqa: ANN001
    """Short task name, e.g. 'run_sweep' from the dotted path."""
    name = sender.name if sender else "unknown"
    return name.rsplit(".", 1)[-1] if name else "unknown"


@task_prerun.connect
def _on_task_prerun(sender=None, task_id=None, **kwargs) -> None:  # noqa: ANN001, ANN003
    if task_id:
        _task_start_times[task_id] = _time.monotonic()


@task_postrun.connect
def _on_task_postrun(sender=None, task_id=None, **kwargs) -> None:  # noqa: ANN001, ANN003
    short = _short_name(sender)
    CELERY_TASK_TOTAL.labels(task_name=short, status="success").inc()

    start = _task_start_times.pop(task_id, None) if task_id else None
    if start is not None:
        CELERY_TASK_DURATION_SECONDS.labels(task_name=short).observe(_time.monotonic() - start)


@task_failure.connect
def _on_task_failure(sender=None, task_id=None, **kwargs) -> None:  # noqa: ANN001, ANN003
    CELERY_TASK_TOTAL.labels(task_name=_short_name(sender), status="failure").inc()
    if task_id:
        _task_start_times.pop(task_id, None)

