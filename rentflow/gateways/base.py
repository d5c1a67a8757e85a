"""Booking backend interface.

All backend adapters must implement this interface.
Orchestration rules should NOT live in adapters - only backend communication.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from rentflow.domain.booking_state import BookingStatus
from rentflow.domain.payment_gate import GateKind
from rentflow.schemas.booking import (
    Booking,
    CaptureResult,
    CheckoutSession,
    PaymentSettlement,
    RefundRecord,
)


class JobStatus:
    """Background job statuses reported on the progress endpoint."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    TERMINAL = frozenset({COMPLETED, ERROR})


@dataclass
class ProgressSnapshot:
    """One reading of a background job's progress."""

    progress: float
    status: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> "ProgressSnapshot | None":
        """Normalize a progress payload; None when the payload carries nothing usable."""
        if not payload:
            return None

        raw_progress = next(
            (payload[k] for k in ("progress", "Progress", "ProgressPercentage") if payload.get(k) is not None),
            None,
        )
        raw_status = next(
            (payload[k] for k in ("status", "Status", "state") if payload.get(k)),
            None,
        )
        if raw_progress is None and raw_status is None:
            return None

        try:
            progress = float(raw_progress) if raw_progress is not None else 0.0
        except (TypeError, ValueError):
            progress = 0.0
        progress = min(100.0, max(0.0, progress))

        status = str(raw_status or JobStatus.PROCESSING).strip().lower()
        if status in ("complete", "completed", "done", "succeeded") or progress >= 100:
            status = JobStatus.COMPLETED
        elif status in ("error", "failed", "failure"):
            status = JobStatus.ERROR
        elif status not in (JobStatus.PENDING, JobStatus.PROCESSING):
            status = JobStatus.PROCESSING

        return cls(progress=progress, status=status)


class BookingBackend(ABC):
    """Abstract booking backend."""

    @abstractmethod
    async def get_booking(self, booking_id: str) -> Booking:
        """Fetch the current booking view."""

    @abstractmethod
    async def update_booking_status(
        self,
        booking_id: str,
        status: BookingStatus,
        damage_capture_amount: Decimal | None = None,
    ) -> Booking:
        """Set the booking status (a set, not an increment: safe to repeat).

        Args:
            booking_id: Booking identifier
            status: New status
            damage_capture_amount: Deposit amount captured at completion, if any

        Returns:
            Updated booking
        """

    @abstractmethod
    async def refund_payment(
        self,
        booking_id: str,
        amount: Decimal,
        reason: str,
    ) -> RefundRecord:
        """Refund part of the booking's total payment."""

    @abstractmethod
    async def capture_security_deposit(
        self,
        booking_id: str,
        amount: Decimal,
    ) -> CaptureResult:
        """Capture part of the authorized security deposit."""

    @abstractmethod
    async def create_checkout_session(
        self,
        booking_id: str,
        kind: GateKind,
        amount: Decimal,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Create a hosted checkout session for a payment gate."""

    @abstractmethod
    async def get_payment_settlement_status(
        self,
        booking_id: str,
        kind: GateKind,
    ) -> PaymentSettlement:
        """Ask whether the payment for a gate has settled."""

    @abstractmethod
    async def get_background_job_progress(self, job_id: str) -> ProgressSnapshot | None:
        """Read progress of a long-running backend job."""

    async def close(self) -> None:
        """Release transport resources."""
