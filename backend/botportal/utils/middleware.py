"""
Custom middleware for request processing.
"""
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import time
import uuid
import logging
from typing import Callable, Deque, Dict, Tuple
from collections import defaultdict, deque

from ..config import settings
from .telemetry import metrics_collector

logger = logging.getLogger(__name__)

QUIET_PATHS: Tuple[str, ...] = ("/health", "/metrics")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Add request ID to request state and response headers."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        log = logger.debug if request.url.path.startswith(QUIET_PATHS) else logger.info
        log(f"Request started: {request.method} {request.url.path} [{request_id}]")

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        return response


class TimingMiddleware(BaseHTTPMiddleware):
    """Add request timing information."""

    def __init__(self, app, slow_threshold: float = 0.5):
        super().__init__(app)
        self.slow_threshold = slow_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Measure and log request processing time."""
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = f"{process_time:.4f}"

        # Submit must acknowledge quickly; anything slower is worth a warning
        if process_time > self.slow_threshold:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} "
                f"took {process_time:.2f}s"
            )

        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window rate limiting per client."""

    def __init__(self, app, calls: int = 120, period: int = 60):
        super().__init__(app)
        self.calls = calls
        self.period = period
        self.clients: Dict[str, Deque[float]] = defaultdict(deque)

    def _get_client_id(self, request: Request) -> str:
        """Get client identifier from request."""
        auth = request.headers.get("Authorization")
        if auth:
            return auth[-32:]

        client = request.client
        return client.host if client else "unknown"

    def _is_rate_limited(self, client_id: str) -> bool:
        """Check if client has exceeded rate limit."""
        now = time.monotonic()
        window = self.clients[client_id]

        while window and window[0] <= now - self.period:
            window.popleft()

        if len(window) >= self.calls:
            return True

        window.append(now)
        return False

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Check rate limit before processing request."""
        if request.url.path.startswith(QUIET_PATHS):
            return await call_next(request)

        client_id = self._get_client_id(request)

        if self._is_rate_limited(client_id):
            logger.warning(f"Rate limit exceeded for client: {client_id}")
            return JSONResponse(
                content={"error": "Rate limit exceeded", "details": "Please try again later."},
                status_code=429,
                headers={
                    "Retry-After": str(self.period),
                    "X-RateLimit-Limit": str(self.calls),
                    "X-RateLimit-Period": str(self.period)
                }
            )

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(self.calls)
        response.headers["X-RateLimit-Remaining"] = str(
            max(self.calls - len(self.clients[client_id]), 0)
        )

        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Global error handling middleware."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Catch and handle errors consistently."""
        try:
            return await call_next(request)

        except Exception as e:
            request_id = getattr(request.state, "request_id", "unknown")
            logger.error(
                f"Unhandled exception in request {request_id}: {str(e)}",
                exc_info=True
            )
            metrics_collector.record_error()

            return JSONResponse(
                content={
                    "error": "Internal server error",
                    "details": str(e) if settings.debug else "An unexpected error occurred",
                    "request_id": request_id
                },
                status_code=500
            )
