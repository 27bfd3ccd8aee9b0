"""
Telemetry and monitoring utilities.
Prometheus metrics for the delivery pipeline plus a lightweight in-process summary.
"""
import logging
import time
from typing import Dict

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import FastAPI, Request, Response

logger = logging.getLogger(__name__)

# Metrics definitions
request_count = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

submissions = Counter(
    'chat_submissions_total',
    'Chat messages submitted for asynchronous processing',
    ['result']
)

agent_outcomes = Counter(
    'agent_calls_total',
    'Agent bridge outcomes',
    ['outcome']
)

agent_latency = Histogram(
    'agent_latency_seconds',
    'Time from submission to terminal state',
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 180, 300, 600)
)

status_polls = Counter(
    'status_polls_total',
    'Status endpoint lookups',
    ['status', 'cached']
)

websocket_connections = Gauge(
    'websocket_connections_active',
    'Active WebSocket connections'
)

background_tasks = Gauge(
    'background_tasks_active',
    'Background jobs currently running'
)


def setup_telemetry(app: FastAPI) -> None:
    """
    Setup telemetry and monitoring for the application.

    Args:
        app: FastAPI application instance
    """
    logger.info("Setting up telemetry...")

    # Add metrics endpoint
    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Add middleware for request metrics
    @app.middleware("http")
    async def track_requests(request: Request, call_next):
        """Track HTTP request metrics."""
        start_time = time.perf_counter()

        response = await call_next(request)

        duration = time.perf_counter() - start_time

        # Route template keeps label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or "unmatched"

        request_count.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()

        request_duration.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)

        return response

    logger.info("Telemetry setup complete")


def track_submission(accepted: bool) -> None:
    """Track a submit attempt."""
    submissions.labels(result="accepted" if accepted else "rejected").inc()
    metrics_collector.record_submission(accepted)


def track_agent_outcome(outcome: str, latency_ms: float = None) -> None:
    """Track how an agent job ended."""
    agent_outcomes.labels(outcome=outcome).inc()
    if latency_ms is not None:
        agent_latency.observe(latency_ms / 1000.0)
    metrics_collector.record_agent_outcome(outcome)


def track_status_poll(status: str, cached: bool = False) -> None:
    """Track a status lookup."""
    status_polls.labels(status=status, cached=str(cached)).inc()


def update_websocket_connections(count: int) -> None:
    """Update WebSocket connections gauge."""
    websocket_connections.set(count)


def update_background_tasks(count: int) -> None:
    """Update running background jobs gauge."""
    background_tasks.set(count)


class MetricsCollector:
    """Collects and manages application metrics."""

    def __init__(self):
        self.start_time = time.time()
        self.accepted = 0
        self.rejected = 0
        self.outcomes: Dict[str, int] = {}
        self.error_count = 0

    def record_submission(self, accepted: bool) -> None:
        if accepted:
            self.accepted += 1
        else:
            self.rejected += 1

    def record_agent_outcome(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def record_error(self):
        """Record an error."""
        self.error_count += 1

    def get_stats(self) -> dict:
        """Get current statistics."""
        uptime = time.time() - self.start_time

        return {
            "uptime_seconds": uptime,
            "messages_accepted": self.accepted,
            "messages_rejected": self.rejected,
            "agent_outcomes": dict(self.outcomes),
            "errors": self.error_count,
            "messages_per_minute": (self.accepted / uptime) * 60 if uptime > 0 else 0
        }


# Global metrics collector
metrics_collector = MetricsCollector()
