"""Records carried across the hosted checkout redirect."""

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from rentflow.domain.booking_state import BookingStatus
from rentflow.domain.payment_gate import GateKind


class TransitionIntent(BaseModel):
    """The transition that was in progress when control left for the payment provider."""

    booking_id: str
    target_status: BookingStatus
    gate_kind: GateKind
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    checkout_session_url: str | None = None


class IdentitySnapshot(BaseModel):
    """Who started the checkout, so the session can be restored on return."""

    user_id: str
    email: str | None = None
    role: str | None = None
    company_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
