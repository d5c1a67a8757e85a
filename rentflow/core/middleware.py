"""Request tracing and response hardening middleware."""

import logging
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from rentflow.config import settings

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def booking_id_from_path(path: str) -> str | None:
    """Booking id from `/.../bookings/<id>/...`, if the route is booking-scoped."""
    parts = [part for part in path.split("/") if part]
    for index, part in enumerate(parts[:-1]):
        if part == "bookings":
            return parts[index + 1]
    return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs its outcome against the booking it touched."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        booking_id = booking_id_from_path(request.url.path)
        request.state.request_id = request_id
        request.state.booking_id = booking_id
        target = f"{request.method} {request.url.path}"
        if booking_id:
            target = f"{target} [booking {booking_id}]"

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"{target} failed id={request_id}")
            raise
        duration = time.perf_counter() - started

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Response-Time"] = f"{duration:.3f}s"

        if duration > settings.slow_request_seconds:
            logger.warning(f"Slow request: {target} took {duration:.3f}s id={request_id}")
        elif response.status_code >= 500:
            logger.error(f"{target} -> {response.status_code} id={request_id}")
        else:
            logger.debug(f"{target} -> {response.status_code} {duration:.3f}s id={request_id}")

        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds hardening headers; HSTS only outside debug."""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        # Responses carry booking and payment state
        "Cache-Control": "no-store",
    }

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        response = await call_next(request)

        for name, value in self.HEADERS.items():
            response.headers.setdefault(name, value)
        if not settings.debug:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
            )

        return response
