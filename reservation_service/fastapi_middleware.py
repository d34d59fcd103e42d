"""
FastAPI Middleware for Observability.

Provides:
1. Request/response metrics (latency, status codes, in-flight)
2. Correlation ID propagation
3. Request logging

Usage:
    from reservation_service.fastapi_middleware import setup_observability

    app = FastAPI()
    setup_observability(app, service_name="reservation-service")
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

from .metrics import (
    HTTP_ERRORS_TOTAL,
    HTTP_IN_FLIGHT_REQUESTS,
    HTTP_REQUEST_LATENCY,
    HTTP_REQUEST_TOTAL,
    set_service_info,
)

logger = logging.getLogger(__name__)


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware to track HTTP request metrics.

    Tracks:
    - Request latency (histogram for p50/p95/p99)
    - Request count by status code
    - In-flight requests (gauge)
    - Error rate, split into client and server errors
    """

    def __init__(self, app, service_name: str):
        super().__init__(app)
        self.service_name = service_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        HTTP_IN_FLIGHT_REQUESTS.labels(service=self.service_name).inc()
        start_time = time.time()
        endpoint = self._normalize_path(request.url.path)

        status_code = "500"
        try:
            response = await call_next(request)
            status_code = str(response.status_code)
            if response.status_code >= 400:
                HTTP_ERRORS_TOTAL.labels(
                    service=self.service_name,
                    endpoint=endpoint,
                    error_type="client_error" if response.status_code < 500 else "server_error"
                ).inc()
            return response

        except Exception as e:
            HTTP_ERRORS_TOTAL.labels(
                service=self.service_name,
                endpoint=endpoint,
                error_type="server_error"
            ).inc()
            logger.error(
                f"Request failed: path={request.url.path}, "
                f"correlation_id={get_correlation_id(request)}, error={str(e)}"
            )
            raise

        finally:
            latency = time.time() - start_time

            HTTP_REQUEST_LATENCY.labels(
                service=self.service_name,
                endpoint=endpoint,
                method=request.method,
                status_code=status_code
            ).observe(latency)

            HTTP_REQUEST_TOTAL.labels(
                service=self.service_name,
                endpoint=endpoint,
                method=request.method,
                status_code=status_code
            ).inc()

            HTTP_IN_FLIGHT_REQUESTS.labels(service=self.service_name).dec()

            logger.info(
                f"Request completed: method={request.method}, path={endpoint}, "
                f"status={status_code}, latency={latency:.3f}s, "
                f"correlation_id={get_correlation_id(request)}"
            )

    def _normalize_path(self, path: str) -> str:
        """
        Normalize path for metrics to avoid high cardinality.

        /api/v1/reservations/3f1c...-... -> /api/v1/reservations/{id}
        """
        parts = path.split("/")
        normalized = []

        for part in parts:
            if len(part) == 36 and part.count("-") == 4:
                normalized.append("{id}")
            elif part.isdigit():
                normalized.append("{id}")
            else:
                normalized.append(part)

        return "/".join(normalized)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Propagate a correlation ID from the caller, or mint one."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(
            "X-Correlation-ID",
            request.headers.get("X-Request-ID", str(uuid.uuid4()))
        )
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


def setup_observability(
    app: FastAPI,
    service_name: str,
    version: str = "1.0.0",
    environment: str = "production"
):
    """
    Add metrics + correlation middleware and the /metrics, /health and
    /ready endpoints.
    """
    set_service_info(service_name, version, environment)

    # Middleware added last is outermost: correlation IDs exist before metrics run
    app.add_middleware(MetricsMiddleware, service_name=service_name)
    app.add_middleware(CorrelationIdMiddleware)

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )

    @app.get("/health")
    async def health():
        """Health check endpoint for load balancers."""
        return {
            "status": "healthy",
            "service": service_name,
            "version": version
        }

    @app.get("/ready")
    async def ready(request: Request):
        """Readiness check: the reservation manager must be wired up."""
        if getattr(request.app.state, "manager", None) is None:
            return Response(status_code=503, content='{"status": "starting"}', media_type="application/json")
        return {"status": "ready"}

    logger.info(f"Observability setup complete for {service_name}")


def get_correlation_id(request: Request) -> str:
    """Get correlation ID from request."""
    return getattr(request.state, "correlation_id", "-")
