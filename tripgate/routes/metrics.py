"""
Prometheus metrics endpoint.

Exposes request and timer delivery metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Timer Metrics
# ============================================

timers_started = Counter(
    'timers_started_total',
    'Total timers started or restarted',
    ['kind']
)

timers_completed = Counter(
    'timers_completed_total',
    'Total timers completed after a successful delivery'
)

timers_retried = Counter(
    'timers_retry_total',
    'Total timer deliveries rescheduled for retry'
)

timers_expired = Counter(
    'timers_expired_total',
    'Total timers expired without a successful delivery'
)

poll_cycles = Counter(
    'timer_poll_cycles_total',
    'Total timer poll cycles run'
)

due_timers = Gauge(
    'timer_poll_due_count',
    'Number of due timers found by the last poll cycle'
)

# ============================================
# Webhook Metrics
# ============================================

webhooks_sent = Counter(
    'webhooks_sent_total',
    'Total webhook delivery attempts',
    ['outcome']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_timer_started(restarted: bool):
    """Record a timer start or restart."""
    timers_started.labels(kind="restart" if restarted else "start").inc()


def track_timers_completed(count: int):
    if count > 0:
        timers_completed.inc(count)


def track_timer_retry():
    timers_retried.inc()


def track_timer_expired():
    timers_expired.inc()


def track_poll_cycle(due_count: int):
    """Record a finished poll cycle and how much work it found."""
    poll_cycles.inc()
    due_timers.set(due_count)


def track_webhook_sent(outcome: str):
    """Record a webhook attempt; outcome is "success" or a failure kind."""
    webhooks_sent.labels(outcome=outcome).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
