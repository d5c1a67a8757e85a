"""Refund and cancellation endpoints."""

from fastapi import APIRouter

from rentflow.api.deps import CurrentBooking, Refunds
from rentflow.schemas.orchestration import (
    CancelRequest,
    CancelResponse,
    RefundRequest,
    RefundResponse,
    SuggestedRefundResponse,
)

router = APIRouter()


@router.get("/{booking_id}/refund", response_model=SuggestedRefundResponse)
async def suggested_refund(booking: CurrentBooking, refunds: Refunds) -> SuggestedRefundResponse:
    """Amount still refundable on the booking."""
    return SuggestedRefundResponse(
        booking_id=booking.id,
        refundable_amount=refunds.suggested_refund(booking),
        refunded_total=booking.refunded_total,
        currency=booking.currency,
    )


@router.post("/{booking_id}/refund", response_model=RefundResponse)
async def refund(request: RefundRequest, booking: CurrentBooking, refunds: Refunds) -> RefundResponse:
    """Refund part of the total and cancel the booking."""
    record, updated = await refunds.refund(booking, request.amount, request.reason)
    return RefundResponse(refund=record, booking=updated)


@router.post("/{booking_id}/cancel", response_model=CancelResponse)
async def cancel(request: CancelRequest, booking: CurrentBooking, refunds: Refunds) -> CancelResponse:
    """Cancel the booking, refunding first when an amount is given."""
    record, updated = await refunds.cancel(booking, request.refund_amount, request.reason)
    return CancelResponse(refund=record, booking=updated)
