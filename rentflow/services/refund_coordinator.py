"""Refund-then-cancel coordination.

The refund and the Cancelled status write are two calls to two systems with
no shared transaction. The refund goes first and is never retried; if the
status write then fails the booking is flagged for an operator instead of
being refunded again or assumed cancelled.
"""

import logging
from decimal import Decimal

from rentflow.core.events import EventChannel, EventKind, event_channel
from rentflow.core.exceptions import (
    BookingNotRefundable,
    InconsistentStateError,
    InvalidRefundAmount,
    MissingPaymentReference,
)
from rentflow.domain.booking_state import TERMINAL_STATUSES, BookingStatus, status_engine
from rentflow.schemas.booking import Booking, RefundRecord
from rentflow.services.audit_service import AuditService, audit_service
from rentflow.services.gate_orchestrator import PaymentGateOrchestrator

logger = logging.getLogger(__name__)


class RefundCoordinator:
    """Issues partial refunds and cancels the booking afterwards."""

    def __init__(
        self,
        orchestrator: PaymentGateOrchestrator,
        events: EventChannel | None = None,
        audit: AuditService | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.backend = orchestrator.backend
        self.events = events or orchestrator.events or event_channel
        self.audit = audit or orchestrator.audit or audit_service

    def suggested_refund(self, booking: Booking) -> Decimal:
        """Largest amount that can still be refunded."""
        return booking.refundable_amount

    def validate_refund(self, booking: Booking, amount: Decimal) -> Decimal:
        """Check a refund request without touching the backend.

        Raises:
            InvalidRefundAmount: amount <= 0 or above the refundable balance
            MissingPaymentReference: nothing was paid
            BookingNotRefundable: booking already Completed or Cancelled
        """
        amount = Decimal(str(amount))
        refundable = booking.refundable_amount
        if amount <= 0 or amount > refundable:
            raise InvalidRefundAmount(amount, refundable)
        if not booking.total_payment_ref:
            raise MissingPaymentReference(booking.id)
        if booking.status in TERMINAL_STATUSES:
            raise BookingNotRefundable(booking.id, booking.status.value)
        return amount

    async def refund(self, booking: Booking, amount: Decimal, reason: str = "") -> tuple[RefundRecord, Booking]:
        """Refund part of the total, then cancel the booking.

        Returns:
            The refund record and the cancelled booking

        Raises:
            InvalidRefundAmount, MissingPaymentReference, BookingNotRefundable:
                request rejected before any backend call
            InconsistentStateError: open flag on the booking, or the refund
                succeeded and the Cancelled write failed
        """
        amount = self.validate_refund(booking, amount)
        await self.audit.ensure_consistent(booking.id, "refund")

        record = await self.backend.refund_payment(booking.id, amount, reason)
        booking.refunds.append(record)
        logger.info(f"Refunded {record.amount} on booking {booking.id} (refund {record.id})")
        await self.events.publish(
            EventKind.REFUND_ISSUED,
            booking.id,
            f"Refunded {record.amount}",
            refund_id=record.id,
            amount=record.amount,
            reason=reason,
        )

        try:
            updated = await self.orchestrator.commit(booking, BookingStatus.CANCELLED)
        except Exception as e:
            logger.error(f"Cancel after refund {record.id} failed on booking {booking.id}: {e}")
            flag = await self.audit.record_inconsistency(
                booking.id,
                AuditService.OPERATION_REFUND,
                record.amount,
                BookingStatus.CANCELLED,
                external_ref=record.id,
                error_message=str(e),
            )
            await self.events.publish(
                EventKind.INCONSISTENT_STATE,
                booking.id,
                "Refund issued but booking not cancelled",
                flag_id=flag.id,
                refund_id=record.id,
                amount=record.amount,
            )
            raise InconsistentStateError(booking.id, "refund", detail=str(e), flag_id=flag.id) from e

        if all(r.id != record.id for r in updated.refunds):
            updated.refunds.append(record)
        return record, updated

    async def cancel(
        self,
        booking: Booking,
        refund_amount: Decimal | None = None,
        reason: str = "",
    ) -> tuple[RefundRecord | None, Booking]:
        """Cancel a booking, refunding first when an amount is given.

        No amount (or zero) cancels without a refund.
        """
        if refund_amount is None or Decimal(str(refund_amount)) == 0:
            status_engine.validate(booking.status, BookingStatus.CANCELLED)
            await self.audit.ensure_consistent(booking.id, "cancel")
            updated = await self.orchestrator.commit(booking, BookingStatus.CANCELLED)
            return None, updated
        return await self.refund(booking, refund_amount, reason)
