"""Booking transition and payment gate endpoints."""

from fastapi import APIRouter

from rentflow.api.deps import CurrentBooking, Orchestrator
from rentflow.api.v1.jobs import job_status, poll_options
from rentflow.domain.payment_gate import GateKind
from rentflow.schemas.orchestration import (
    BulkResumeRequest,
    BulkResumeResult,
    CheckoutRedirect,
    CheckoutRequest,
    DamageReviewRequest,
    DamageReviewResult,
    JobStatusResponse,
    ResumeResult,
    TransitionRequest,
    TransitionResult,
    WatchRequest,
)

router = APIRouter()


@router.post("/{booking_id}/transitions", response_model=TransitionResult)
async def request_transition(
    request: TransitionRequest,
    booking: CurrentBooking,
    orchestrator: Orchestrator,
) -> TransitionResult:
    """Move a booking forward, or get the gate that must be satisfied first."""
    return await orchestrator.request_transition(booking, request.target_status, request.policy)


@router.post("/{booking_id}/gates/in-person", response_model=TransitionResult)
async def confirm_in_person(
    booking_id: str,
    request: TransitionRequest,
    orchestrator: Orchestrator,
) -> TransitionResult:
    """Commit after payment was taken on the card terminal."""
    return await orchestrator.confirm_in_person(booking_id, request.target_status, request.policy)


@router.post("/{booking_id}/gates/{kind}/checkout", response_model=CheckoutRedirect)
async def start_checkout(
    kind: GateKind,
    request: CheckoutRequest,
    booking: CurrentBooking,
    orchestrator: Orchestrator,
) -> CheckoutRedirect:
    """Start a hosted checkout; the caller redirects the browser to `session_url`."""
    return await orchestrator.start_checkout(
        booking, kind, request.target_status, request.policy, identity=request.identity
    )


@router.delete("/{booking_id}/intent", response_model=ResumeResult)
async def abandon_gate(booking_id: str, orchestrator: Orchestrator) -> ResumeResult:
    """Forget a pending checkout without changing the booking."""
    return await orchestrator.abandon_gate(booking_id)


@router.post("/{booking_id}/resume", response_model=ResumeResult)
async def resume(booking_id: str, orchestrator: Orchestrator) -> ResumeResult:
    """Finish a pending transition if its payment has settled."""
    return await orchestrator.resume_if_pending(booking_id)


@router.post("/resume-pending", response_model=BulkResumeResult)
async def resume_pending(
    orchestrator: Orchestrator,
    request: BulkResumeRequest | None = None,
) -> BulkResumeResult:
    """Sync payments for many bookings at once and commit the ones that settled."""
    booking_ids = request.booking_ids if request is not None else None
    return await orchestrator.resume_all_pending(booking_ids)


@router.post("/{booking_id}/settlement/watch", response_model=JobStatusResponse)
async def watch_settlement(
    booking_id: str,
    orchestrator: Orchestrator,
    request: WatchRequest | None = None,
) -> JobStatusResponse:
    """Poll for settlement in the background and resume once it lands."""
    handle = await orchestrator.watch_settlement(booking_id, poll_options(request))
    return job_status(handle)


@router.post("/{booking_id}/complete", response_model=DamageReviewResult)
async def complete(
    request: DamageReviewRequest,
    booking: CurrentBooking,
    orchestrator: Orchestrator,
) -> DamageReviewResult:
    """Complete the rental after the damage review."""
    return await orchestrator.complete_with_damage_review(
        booking, request.has_damage, request.damage_amount, request.policy
    )
