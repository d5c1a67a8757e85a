"""Booking-related Pydantic schemas.

These mirror what the booking backend returns. The backend is not consistent
about key casing (camelCase from the API, PascalCase from some legacy
endpoints), so every model here accepts both and ignores unknown fields.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from rentflow.domain.booking_state import BookingStatus
from rentflow.domain.payment_state import (
    PaymentStatus,
    SettlementStatus,
    parse_payment_status,
    parse_settlement_status,
)


def _lower_first(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            (k[:1].lower() + k[1:] if isinstance(k, str) else k): v for k, v in data.items()
        }
    return data


class BackendModel(BaseModel):
    """Base for models parsed from backend payloads."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        return _lower_first(data)


class RefundRecord(BackendModel):
    """A refund issued against a booking's total payment."""

    id: str = Field(..., validation_alias=AliasChoices("id", "refundId"))
    amount: Decimal = Field(..., gt=0)
    reason: str | None = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        validation_alias=AliasChoices("createdAt", "created_at", "refundedAt"),
    )

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)


class Booking(BackendModel):
    """Read/write view of a booking owned by the backend."""

    id: str
    booking_number: str | None = Field(
        None, validation_alias=AliasChoices("bookingNumber", "booking_number")
    )
    status: BookingStatus
    total_amount: Decimal = Field(
        Decimal("0"),
        ge=0,
        validation_alias=AliasChoices("totalAmount", "total_amount", "totalPrice"),
    )
    security_deposit_amount: Decimal = Field(
        Decimal("0"),
        ge=0,
        validation_alias=AliasChoices(
            "securityDepositAmount", "security_deposit_amount", "securityDeposit"
        ),
    )
    payment_status: PaymentStatus = Field(
        PaymentStatus.UNPAID,
        validation_alias=AliasChoices("paymentStatus", "payment_status"),
    )
    total_payment_ref: str | None = Field(
        None,
        validation_alias=AliasChoices("totalPaymentRef", "total_payment_ref", "paymentIntentId"),
    )
    deposit_auth_ref: str | None = Field(
        None,
        validation_alias=AliasChoices(
            "depositAuthRef", "deposit_auth_ref", "securityDepositPaymentIntentId"
        ),
    )
    deposit_authorized_amount: Decimal | None = Field(
        None,
        ge=0,
        validation_alias=AliasChoices(
            "depositAuthorizedAmount", "deposit_authorized_amount", "securityDepositAuthorizedAmount"
        ),
    )
    deposit_captured_amount: Decimal = Field(
        Decimal("0"),
        ge=0,
        validation_alias=AliasChoices(
            "depositCapturedAmount", "deposit_captured_amount", "securityDepositChargedAmount"
        ),
    )
    refunds: list[RefundRecord] = Field(default_factory=list)
    currency: str = "USD"

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            return BookingStatus(v)
        return v

    @field_validator("payment_status", mode="before")
    @classmethod
    def coerce_payment_status(cls, v: Any) -> PaymentStatus:
        return parse_payment_status(v)

    @field_validator(
        "total_amount",
        "security_deposit_amount",
        "deposit_captured_amount",
        "refunds",
        mode="before",
    )
    @classmethod
    def none_to_default(cls, v: Any, info) -> Any:
        if v is None:
            return [] if info.field_name == "refunds" else Decimal("0")
        return v

    @field_validator("total_payment_ref", "deposit_auth_ref", mode="before")
    @classmethod
    def blank_ref_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def refunded_total(self) -> Decimal:
        return sum((r.amount for r in self.refunds), Decimal("0"))

    @property
    def refundable_amount(self) -> Decimal:
        return max(Decimal("0"), self.total_amount - self.refunded_total)


class CompanyPolicy(BaseModel):
    """Company-level payment policy relevant to gates."""

    deposit_mandatory: bool = False
    default_security_deposit: Decimal = Field(Decimal("0"), ge=0)
    currency: str = "USD"


class CheckoutSession(BackendModel):
    """Hosted checkout session created by the backend."""

    session_url: str = Field(..., validation_alias=AliasChoices("sessionUrl", "session_url", "url"))
    session_id: str | None = Field(None, validation_alias=AliasChoices("sessionId", "session_id"))


class PaymentSettlement(BackendModel):
    """Answer of the settlement probe for one booking gate."""

    settled: bool = Field(False, validation_alias=AliasChoices("settled", "isPaid", "success"))
    ref: str | None = Field(
        None, validation_alias=AliasChoices("ref", "paymentIntentId", "paymentRef")
    )
    status: str | None = None

    @property
    def outcome(self) -> SettlementStatus:
        return parse_settlement_status(self.settled, self.status)


class CaptureResult(BackendModel):
    """Result of capturing part of an authorized security deposit."""

    captured_amount: Decimal = Field(
        ..., validation_alias=AliasChoices("capturedAmount", "captured_amount", "amount")
    )
    ref: str | None = Field(None, validation_alias=AliasChoices("ref", "chargeId", "paymentIntentId"))
