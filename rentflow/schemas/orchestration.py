"""Orchestration request/response schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from rentflow.domain.booking_state import BookingStatus
from rentflow.domain.payment_gate import GateKind, PaymentMethod
from rentflow.schemas.booking import Booking, CompanyPolicy, RefundRecord
from rentflow.schemas.intent import IdentitySnapshot, TransitionIntent


class TransitionOutcome(str, Enum):
    """What happened to a requested transition."""

    COMMITTED = "committed"
    GATE_REQUIRED = "gate_required"
    REFUND_REQUIRED = "refund_required"


class ResumeStatus(str, Enum):
    """Result of resuming a stored intent."""

    COMMITTED = "committed"
    NO_INTENT = "no_intent"
    PENDING = "pending"
    ABANDONED = "abandoned"


class GatePrompt(BaseModel):
    """Everything a caller needs to render a gate, without presentation."""

    kind: GateKind
    booking_id: str
    target_status: BookingStatus
    amount_due: Decimal = Decimal("0")
    currency: str = "USD"
    payment_methods: list[PaymentMethod] = Field(default_factory=list)
    # Damage review only
    max_damage_amount: Decimal = Decimal("0")
    can_capture: bool = False


class TransitionResult(BaseModel):
    """Response to a transition request."""

    outcome: TransitionOutcome
    booking: Booking
    gate: GatePrompt | None = None


class CheckoutRedirect(BaseModel):
    """Where to send the browser to satisfy a payment gate."""

    booking_id: str
    gate_kind: GateKind
    session_url: str
    session_id: str | None = None


class ResumeResult(BaseModel):
    """Response to a resumption attempt."""

    status: ResumeStatus
    booking_id: str
    intent: TransitionIntent | None = None
    booking: Booking | None = None
    already_applied: bool = False


class CheckoutReturnResult(BaseModel):
    """Response to the hosted checkout landing back on the console."""

    resume: ResumeResult
    identity: IdentitySnapshot | None = None


class BulkResumeItem(BaseModel):
    """One booking's entry in a bulk resume; `error` set when it failed."""

    booking_id: str
    status: ResumeStatus | None = None
    already_applied: bool = False
    error: str | None = None
    code: str | None = None


class BulkResumeResult(BaseModel):
    """Per-booking results of a bulk resume with totals."""

    total_processed: int
    committed_count: int
    pending_count: int
    failed_count: int
    results: list[BulkResumeItem]

    @classmethod
    def from_items(cls, items: list[BulkResumeItem]) -> "BulkResumeResult":
        return cls(
            total_processed=len(items),
            committed_count=sum(1 for item in items if item.status == ResumeStatus.COMMITTED),
            pending_count=sum(1 for item in items if item.status == ResumeStatus.PENDING),
            failed_count=sum(1 for item in items if item.error is not None),
            results=items,
        )


class DamageReviewResult(BaseModel):
    """Outcome of the completion damage review."""

    booking: Booking
    captured_amount: Decimal = Decimal("0")
    capture_skipped: bool = False


# ==================== API REQUESTS ====================


class TransitionRequest(BaseModel):
    """Request to move a booking to a new status."""

    target_status: BookingStatus
    policy: CompanyPolicy = Field(default_factory=CompanyPolicy)


class CheckoutRequest(TransitionRequest):
    """Request to start a hosted checkout for a gate."""

    identity: IdentitySnapshot | None = None


class DamageReviewRequest(BaseModel):
    """Operator's answer to "was there damage?"."""

    has_damage: bool
    damage_amount: Decimal | None = Field(None, ge=0)
    policy: CompanyPolicy = Field(default_factory=CompanyPolicy)


class RefundRequest(BaseModel):
    """Refund then cancel."""

    amount: Decimal
    reason: str = Field("", max_length=1000)


class CancelRequest(BaseModel):
    """Cancel, optionally refunding part of the total."""

    refund_amount: Decimal | None = None
    reason: str = Field("", max_length=1000)


class AcknowledgeRequest(BaseModel):
    """Operator acknowledgement of an inconsistent booking."""

    operator: str = Field(..., min_length=1, max_length=200)
    note: str | None = Field(None, max_length=2000)


class RefundResponse(BaseModel):
    """Refund issued and the resulting booking."""

    refund: RefundRecord
    booking: Booking


class CancelResponse(BaseModel):
    """Cancellation result; refund is None when nothing was refunded."""

    refund: RefundRecord | None = None
    booking: Booking


class SuggestedRefundResponse(BaseModel):
    booking_id: str
    refundable_amount: Decimal
    refunded_total: Decimal
    currency: str


class InconsistencyFlagResponse(BaseModel):
    """Booking whose money and status disagree."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    operation: str
    amount: Decimal
    external_ref: str | None = None
    target_status: str
    error_message: str | None = None
    created_at: datetime | None = None
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    note: str | None = None


class JobStatusResponse(BaseModel):
    """State of a watched poll."""

    job_key: str
    active: bool
    progress: float
    status: str
    attempts: int
    outcome: str | None = None


class WatchRequest(BaseModel):
    """Optional overrides of the default poll cadence and limits."""

    interval_ms: int | None = Field(None, gt=0)
    max_consecutive_errors: int | None = Field(None, ge=1)
    max_consecutive_empty_responses: int | None = Field(None, ge=1)
    max_duration_ms: int | None = Field(None, gt=0)


class BulkResumeRequest(BaseModel):
    """Bookings to resume; omit to resume every booking with a stored intent."""

    booking_ids: list[str] | None = Field(None, max_length=500)
