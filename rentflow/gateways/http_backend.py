"""HTTP adapter for the booking backend."""

import logging
from decimal import Decimal
from typing import Any

import httpx

from rentflow.config import settings
from rentflow.core.exceptions import BackendError, NetworkError, NotFoundError
from rentflow.domain.booking_state import BookingStatus
from rentflow.domain.payment_gate import GateKind
from rentflow.gateways.base import BookingBackend, ProgressSnapshot
from rentflow.schemas.booking import (
    Booking,
    CaptureResult,
    CheckoutSession,
    PaymentSettlement,
    RefundRecord,
)

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str | None:
    """Pull a human-readable message out of an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or None
    if isinstance(body, dict):
        for key in ("error", "message", "detail", "title"):
            if body.get(key):
                return str(body[key])
    return None


def _amount(value: Decimal) -> float:
    # Backend expects plain JSON numbers in major units
    return float(Decimal(value).quantize(Decimal("0.01")))


class HttpBookingBackend(BookingBackend):
    """Booking backend over its REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.backend_base_url).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.backend_api_token
        self.timeout = timeout or settings.backend_timeout_seconds
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-load HTTP client."""
        if self._http_client is None:
            headers = {"Accept": "application/json"}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            NetworkError: transport failure or timeout
            NotFoundError: 404 from the backend
            BackendError: any other non-success status
        """
        try:
            response = await self.http_client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            logger.warning(f"Backend timeout during {operation}: {e}")
            raise NetworkError(operation, "request timed out") from e
        except httpx.TransportError as e:
            logger.warning(f"Backend transport error during {operation}: {e}")
            raise NetworkError(operation, str(e)) from e

        if response.status_code == 404:
            raise NotFoundError("Booking resource", path)
        if response.is_error:
            detail = _error_message(response)
            logger.error(f"Backend rejected {operation}: {response.status_code} {detail or ''}")
            raise BackendError(operation, response.status_code, detail)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(operation, response.status_code, "response is not JSON") from e

    async def get_booking(self, booking_id: str) -> Booking:
        data = await self._request("get_booking", "GET", f"/booking/bookings/{booking_id}")
        return Booking.model_validate(data)

    async def update_booking_status(
        self,
        booking_id: str,
        status: BookingStatus,
        damage_capture_amount: Decimal | None = None,
    ) -> Booking:
        payload: dict[str, Any] = {"status": BookingStatus(status).value}
        if damage_capture_amount is not None:
            payload["damageCaptureAmount"] = _amount(damage_capture_amount)
        data = await self._request(
            "update_booking_status",
            "PUT",
            f"/booking/bookings/{booking_id}/status",
            json=payload,
        )
        return Booking.model_validate(data)

    async def refund_payment(self, booking_id: str, amount: Decimal, reason: str) -> RefundRecord:
        data = await self._request(
            "refund_payment",
            "POST",
            f"/booking/bookings/{booking_id}/refund",
            json={"amount": _amount(amount), "reason": reason},
        )
        record = data.get("refund", data) if isinstance(data, dict) else data
        if isinstance(record, dict):
            record = {"amount": amount, "reason": reason, **record}
        return RefundRecord.model_validate(record)

    async def capture_security_deposit(self, booking_id: str, amount: Decimal) -> CaptureResult:
        data = await self._request(
            "capture_security_deposit",
            "POST",
            f"/booking/bookings/{booking_id}/security-deposit/capture",
            json={"amount": _amount(amount)},
        )
        if isinstance(data, dict):
            data = {"capturedAmount": amount, **data}
        return CaptureResult.model_validate(data)

    async def create_checkout_session(
        self,
        booking_id: str,
        kind: GateKind,
        amount: Decimal,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        data = await self._request(
            "create_checkout_session",
            "POST",
            "/payments/checkout-session",
            json={
                "bookingId": booking_id,
                "kind": GateKind(kind).value,
                "amount": _amount(amount),
                "successUrl": success_url,
                "cancelUrl": cancel_url,
            },
        )
        return CheckoutSession.model_validate(data)

    async def get_payment_settlement_status(
        self, booking_id: str, kind: GateKind
    ) -> PaymentSettlement:
        data = await self._request(
            "get_payment_settlement_status",
            "POST",
            f"/booking/bookings/{booking_id}/sync-payment",
            params={"kind": GateKind(kind).value},
        )
        return PaymentSettlement.model_validate(data)

    async def get_background_job_progress(self, job_id: str) -> ProgressSnapshot | None:
        data = await self._request(
            "get_background_job_progress", "GET", f"/jobs/{job_id}/progress"
        )
        return ProgressSnapshot.from_payload(data if isinstance(data, dict) else None)
