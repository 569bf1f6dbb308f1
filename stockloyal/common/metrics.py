"""Prometheus metrics definitions for StockLoyal.

All metric objects are centralized here as module-level singletons.
Import what you need from anywhere in the codebase:

    from stockloyal.common.metrics import ORDERS_PROCESSED_TOTAL, CELERY_TASK_TOTAL

The /metrics endpoint is mounted in stockloyal/main.py via
prometheus_client.make_asgi_app().
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Info

# ─── App Info ───

APP_INFO = Info("app", "Application metadata")

# ─── HTTP Metrics ───

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path_template", "status_code"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    labelnames=["method", "path_template"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently in progress",
    labelnames=["method"],
)

# ─── Celery Task Metrics ───

CELERY_TASK_TOTAL = Counter(
    "celery_task_total",
    "Total Celery task executions",
    labelnames=["task_name", "status"],
)

CELERY_TASK_DURATION_SECONDS = Histogram(
    "celery_task_duration_seconds",
    "Celery task duration in seconds",
    labelnames=["task_name"],
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

# ─── Business Metrics: Orders ───

ORDERS_SCHEDULED_TOTAL = Counter(
    "orders_scheduled_total",
    "Orders created through the scheduler",
    labelnames=["market_status"],
)

ORDERS_PROCESSED_TOTAL = Counter(
    "orders_processed_total",
    "Scheduled orders run through the execution pipeline",
    labelnames=["outcome"],
)

# ─── Business Metrics: Batches, Sweep, Journal ───

BATCHES_TOTAL = Counter(
    "prepare_batches_total",
    "Prepare batch lifecycle events",
    labelnames=["action"],
)

SWEEP_GROUPS_TOTAL = Counter(
    "sweep_groups_total",
    "Merchant/broker groups handled by the sweep",
    labelnames=["outcome"],
)

JOURNALS_TOTAL = Counter(
    "journals_total",
    "Member funding journals attempted",
    labelnames=["outcome"],
)

# ─── External Calls ───

CALENDAR_FALLBACKS_TOTAL = Counter(
    "calendar_fallbacks_total",
    "Times the weekday fallback calendar was used instead of the feed",
)

BROKER_REQUEST_DURATION_SECONDS = Histogram(
    "broker_request_duration_seconds",
    "Brokerage API request duration in seconds",
    labelnames=["method"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


def set_app_info(version: str, environment: str) -> None:
    """Set the app_info metric values. Called once at startup."""
    APP_INFO.info({"version": version, "environment": environment})
