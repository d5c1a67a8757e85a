"""Payment facts as reported by the booking backend."""

from enum import Enum


class PaymentStatus(str, Enum):
    """Payment status for a booking's total amount."""

    UNPAID = "Unpaid"
    PAID = "Paid"


# Backend spellings that mean the total was collected at some point
PAID_ALIASES = {"paid", "succeeded", "completed", "partially_refunded", "refunded"}


def parse_payment_status(value: object) -> PaymentStatus:
    if isinstance(value, PaymentStatus):
        return value
    if isinstance(value, str) and value.strip().lower() in PAID_ALIASES:
        return PaymentStatus.PAID
    return PaymentStatus.UNPAID


class SettlementStatus(str, Enum):
    """Outcome of a hosted checkout as seen by the settlement probe."""

    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"
    CANCELLED = "cancelled"


SETTLEMENT_FINAL_FAILURES = frozenset({SettlementStatus.FAILED, SettlementStatus.CANCELLED})


def parse_settlement_status(settled: bool, raw_status: str | None) -> SettlementStatus:
    """Derive a settlement status from the probe's `settled` flag and optional status text."""
    if settled:
        return SettlementStatus.SETTLED
    normalized = (raw_status or "").strip().lower()
    if normalized in ("failed", "payment_failed"):
        return SettlementStatus.FAILED
    if normalized in ("cancelled", "canceled", "expired"):
        return SettlementStatus.CANCELLED
    return SettlementStatus.PENDING
