from __future__ import annotations

from prometheus_client import Counter, Histogram

_HTTP_REQUESTS_TOTAL = Counter(
    "helpdesk_http_requests_total",
    "Total HTTP requests handled by the API.",
    labelnames=("method", "path", "status_code"),
)
_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "helpdesk_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
)
_JOBS_PROCESSED_TOTAL = Counter(
    "helpdesk_jobs_processed_total",
    "Background jobs processed by the worker.",
    labelnames=("job_type", "outcome"),
)
_NOTIFICATIONS_SENT_TOTAL = Counter(
    "helpdesk_notifications_sent_total",
    "Notifications dispatched to a send collaborator.",
    labelnames=("channel", "event_type"),
)


def observe_http_request(
    *,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
) -> None:
    safe_path = path or "unknown"
    safe_method = method or "UNKNOWN"

    _HTTP_REQUESTS_TOTAL.labels(
        method=safe_method,
        path=safe_path,
        status_code=str(status_code),
    ).inc()
    _HTTP_REQUEST_DURATION_SECONDS.labels(method=safe_method, path=safe_path).observe(
        max(0.0, duration_ms / 1000.0)
    )


def observe_job(*, job_type: str, outcome: str) -> None:
    _JOBS_PROCESSED_TOTAL.labels(job_type=job_type, outcome=outcome).inc()


def observe_notification_sent(*, channel: str, event_type: str) -> None:
    _NOTIFICATIONS_SENT_TOTAL.labels(channel=channel, event_type=event_type).inc()
