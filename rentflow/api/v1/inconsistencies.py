"""Operator endpoints for bookings whose money and status disagree."""

from fastapi import APIRouter, Query

from rentflow.api.deps import Audit
from rentflow.schemas.orchestration import AcknowledgeRequest, InconsistencyFlagResponse

router = APIRouter()


@router.get("/bookings/{booking_id}/inconsistencies", response_model=list[InconsistencyFlagResponse])
async def list_inconsistencies(
    booking_id: str,
    audit: Audit,
    include_acknowledged: bool = Query(False),
) -> list[InconsistencyFlagResponse]:
    flags = await audit.list_flags(booking_id, include_acknowledged=include_acknowledged)
    return [InconsistencyFlagResponse.model_validate(flag) for flag in flags]


@router.post("/inconsistencies/{flag_id}/acknowledge", response_model=InconsistencyFlagResponse)
async def acknowledge(
    flag_id: str,
    request: AcknowledgeRequest,
    audit: Audit,
) -> InconsistencyFlagResponse:
    """Record that an operator has reconciled the booking by hand."""
    flag = await audit.acknowledge(flag_id, request.operator, request.note)
    return InconsistencyFlagResponse.model_validate(flag)
