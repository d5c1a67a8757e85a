"""Payment gate domain logic.

Decides which precondition must be satisfied before a status transition may
commit. Rules are evaluated in order - first match wins:

1. Confirmed, total not paid                        -> total_payment
2. Active, deposit mandatory, deposit > 0, no hold  -> security_deposit
3. Completed                                        -> damage_review
4. anything else                                    -> none
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING

from rentflow.core.exceptions import InvalidDamageAmount
from rentflow.domain.booking_state import BookingStatus
from rentflow.domain.payment_state import PaymentStatus

if TYPE_CHECKING:
    from rentflow.schemas.booking import Booking, CompanyPolicy


class GateKind(str, Enum):
    """Gate types."""

    TOTAL_PAYMENT = "total_payment"
    SECURITY_DEPOSIT = "security_deposit"
    DAMAGE_REVIEW = "damage_review"
    NONE = "none"


# Gates that are satisfied through a payment provider (terminal or hosted checkout)
PAYMENT_GATES = frozenset({GateKind.TOTAL_PAYMENT, GateKind.SECURITY_DEPOSIT})


class PaymentMethod(str, Enum):
    """Ways an operator can satisfy a payment gate."""

    TERMINAL = "terminal"
    HOSTED_CHECKOUT = "hosted_checkout"


def effective_deposit_amount(booking: Booking, policy: CompanyPolicy) -> Decimal:
    """Booking-specific deposit if set, otherwise the company default."""
    if booking.security_deposit_amount > 0:
        return booking.security_deposit_amount
    return policy.default_security_deposit


def required_gate(
    booking: Booking,
    target: BookingStatus | str,
    policy: CompanyPolicy,
) -> GateKind:
    target = BookingStatus(target)

    if target == BookingStatus.CONFIRMED and booking.payment_status != PaymentStatus.PAID:
        return GateKind.TOTAL_PAYMENT

    if (
        target == BookingStatus.ACTIVE
        and policy.deposit_mandatory
        and effective_deposit_amount(booking, policy) > 0
        and not booking.deposit_auth_ref
    ):
        return GateKind.SECURITY_DEPOSIT

    if target == BookingStatus.COMPLETED:
        return GateKind.DAMAGE_REVIEW

    return GateKind.NONE


def gate_target(kind: GateKind) -> BookingStatus | None:
    """Status a gate guards."""
    return {
        GateKind.TOTAL_PAYMENT: BookingStatus.CONFIRMED,
        GateKind.SECURITY_DEPOSIT: BookingStatus.ACTIVE,
        GateKind.DAMAGE_REVIEW: BookingStatus.COMPLETED,
    }.get(kind)


def gate_amount(booking: Booking, kind: GateKind, policy: CompanyPolicy) -> Decimal:
    """Amount to collect for a payment gate (0 for non-payment gates)."""
    if kind == GateKind.TOTAL_PAYMENT:
        return booking.total_amount
    if kind == GateKind.SECURITY_DEPOSIT:
        return effective_deposit_amount(booking, policy)
    return Decimal("0")


def authorized_deposit_amount(booking: Booking, policy: CompanyPolicy) -> Decimal:
    """Amount currently held on the customer's card.

    A hold reference without an explicit amount is assumed to cover the
    effective deposit.
    """
    if not booking.deposit_auth_ref:
        return Decimal("0")
    if booking.deposit_authorized_amount is not None:
        return booking.deposit_authorized_amount
    return effective_deposit_amount(booking, policy)


def max_damage_capture(booking: Booking, policy: CompanyPolicy) -> Decimal:
    """Largest damage charge allowed: min(deposit, authorized hold) minus prior captures."""
    ceiling = min(effective_deposit_amount(booking, policy), authorized_deposit_amount(booking, policy))
    return max(Decimal("0"), ceiling - booking.deposit_captured_amount)


def validate_damage_amount(booking: Booking, amount: Decimal, policy: CompanyPolicy) -> Decimal:
    """Reject damage charges outside (0, max_damage_capture].

    Raises:
        InvalidDamageAmount: amount out of range
    """
    amount = Decimal(str(amount))
    maximum = max_damage_capture(booking, policy)
    if amount <= 0 or amount > maximum:
        raise InvalidDamageAmount(amount, maximum)
    return amount
