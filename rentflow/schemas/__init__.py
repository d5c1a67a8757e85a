"""Pydantic schemas for backend payloads and API validation."""

from rentflow.schemas.booking import (
    Booking,
    CaptureResult,
    CheckoutSession,
    CompanyPolicy,
    PaymentSettlement,
    RefundRecord,
)
from rentflow.schemas.intent import IdentitySnapshot, TransitionIntent
from rentflow.schemas.orchestration import (
    CheckoutRedirect,
    CheckoutReturnResult,
    DamageReviewResult,
    GatePrompt,
    ResumeResult,
    ResumeStatus,
    TransitionOutcome,
    TransitionResult,
)

__all__ = [
    "Booking",
    "CaptureResult",
    "CheckoutSession",
    "CompanyPolicy",
    "PaymentSettlement",
    "RefundRecord",
    "IdentitySnapshot",
    "TransitionIntent",
    "CheckoutRedirect",
    "CheckoutReturnResult",
    "DamageReviewResult",
    "GatePrompt",
    "ResumeResult",
    "ResumeStatus",
    "TransitionOutcome",
    "TransitionResult",
]
