"""
Prometheus metrics endpoint.

Exposes HTTP, deal and WhatsApp delivery metrics for monitoring.
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
# Business Metrics - Deals
# ============================================

deals_created = Counter(
    'deals_created_total',
    'Total deals registered',
    ['material_source']
)

# ============================================
# WhatsApp Delivery Metrics
# ============================================

whatsapp_messages = Counter(
    'whatsapp_messages_total',
    'WhatsApp send attempts by outcome',
    ['role', 'status']
)

whatsapp_message_errors = Counter(
    'whatsapp_message_errors_total',
    'WhatsApp send failures by classified error type',
    ['error_type']
)

whatsapp_send_duration = Histogram(
    'whatsapp_send_duration_seconds',
    'Time spent on a single WhatsApp send, including rate limit waits',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

rate_limit_waits = Counter(
    'whatsapp_rate_limit_waits_total',
    'Times a send was delayed by the local rate limiter'
)

circuit_breaker_state = Gauge(
    'whatsapp_circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=half-open, 2=open)'
)

CIRCUIT_STATE_VALUES = {"CLOSED": 0, "HALF_OPEN": 1, "OPEN": 2}


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


def track_deal_created(material_source: str):
    """Record a registered deal."""
    deals_created.labels(material_source=material_source).inc()


def track_message_sent(role: str, duration_seconds: float):
    """Record a successful WhatsApp send."""
    whatsapp_messages.labels(role=role, status="sent").inc()
    whatsapp_send_duration.observe(duration_seconds)


def track_message_failed(role: str, error_type: str, duration_seconds: float):
    """Record a failed WhatsApp send."""
    whatsapp_messages.labels(role=role, status="failed").inc()
    whatsapp_message_errors.labels(error_type=error_type).inc()
    whatsapp_send_duration.observe(duration_seconds)


def track_rate_limit_wait():
    """Record a send delayed by the rate limiter."""
    rate_limit_waits.inc()


def track_circuit_breaker_state(state: str):
    """Update the breaker state gauge."""
    circuit_breaker_state.set(CIRCUIT_STATE_VALUES.get(state, 0))


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
