"""Hosted checkout return endpoint."""

from fastapi import APIRouter, Query

from rentflow.api.deps import Orchestrator
from rentflow.schemas.orchestration import CheckoutReturnResult

router = APIRouter()


@router.get("/return", response_model=CheckoutReturnResult)
async def checkout_return(
    orchestrator: Orchestrator,
    booking: str = Query(..., min_length=1),
    gate: str | None = Query(None),
    checkout: str | None = Query(None),
) -> CheckoutReturnResult:
    """Landing point of the success/cancel redirect.

    Restores the operator identity saved before the redirect and resumes (or
    abandons) the stored intent for the booking.
    """
    return await orchestrator.handle_checkout_return(booking, gate, checkout)
