"""
Utility modules for the application.
Provides retry logic, telemetry, middleware and time helpers.

Version: 2.0.0
"""

from .clock import utcnow, epoch_ms

from .retry import (
    RetryConfig,
    RetryStrategy,
    async_retry,
    calculate_retry_delay
)

from .telemetry import (
    setup_telemetry,
    metrics_collector,
    track_submission,
    track_agent_outcome,
    track_status_poll
)

from .middleware import (
    RequestIDMiddleware,
    TimingMiddleware,
    RateLimitMiddleware,
    ErrorHandlingMiddleware
)


__all__ = [
    # Time
    'utcnow',
    'epoch_ms',

    # Retry
    'RetryConfig',
    'RetryStrategy',
    'async_retry',
    'calculate_retry_delay',

    # Telemetry
    'setup_telemetry',
    'metrics_collector',
    'track_submission',
    'track_agent_outcome',
    'track_status_poll',

    # Middleware
    'RequestIDMiddleware',
    'TimingMiddleware',
    'RateLimitMiddleware',
    'ErrorHandlingMiddleware'
]
