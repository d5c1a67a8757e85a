"""Custom application exceptions."""

from decimal import Decimal

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base application exception."""

    code = "app_error"

    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An unexpected error occurred",
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)

    def __str__(self) -> str:
        return str(self.detail)


class NotFoundError(AppException):
    """Resource not found exception."""

    code = "not_found"

    def __init__(self, resource: str = "Resource", identifier: str | None = None) -> None:
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} with ID '{identifier}' not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


# ==================== TRANSITIONS ====================


class InvalidTransition(AppException):
    """Requested status change is not a legal step."""

    code = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Invalid booking transition: {current} → {target}",
        )


class TerminalState(AppException):
    """Booking is already Completed or Cancelled."""

    code = "terminal_state"

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Booking is {current}; no transition to {target} is possible",
        )


# ==================== INPUT VALIDATION ====================


class InvalidRefundAmount(AppException):
    """Refund amount is not positive or exceeds the refundable balance."""

    code = "invalid_refund_amount"

    def __init__(self, amount: Decimal, refundable: Decimal) -> None:
        self.amount = amount
        self.refundable = refundable
        if amount <= 0:
            detail = "Refund amount must be greater than zero"
        else:
            detail = f"Refund amount {amount} exceeds refundable balance {refundable}"
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class InvalidDamageAmount(AppException):
    """Damage charge outside (0, max capturable]."""

    code = "invalid_damage_amount"

    def __init__(self, amount: Decimal, maximum: Decimal) -> None:
        self.amount = amount
        self.maximum = maximum
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Damage amount must be greater than 0 and at most {maximum} (got {amount})",
        )


class GateNotPayable(AppException):
    """Checkout requested for a gate that is not collected by payment."""

    code = "gate_not_payable"

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Gate '{kind}' cannot be satisfied through checkout",
        )


class MissingPaymentReference(AppException):
    """Booking has no completed payment to refund against."""

    code = "missing_payment_reference"

    def __init__(self, booking_id: str) -> None:
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Booking '{booking_id}' has no completed payment to refund",
        )


class BookingNotRefundable(AppException):
    """Booking is already Completed or Cancelled."""

    code = "booking_not_refundable"

    def __init__(self, booking_id: str, current: str) -> None:
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Booking '{booking_id}' is {current} and cannot be refunded",
        )


# ==================== BACKEND ====================


class NetworkError(AppException):
    """Backend unreachable or timed out. Retryable."""

    code = "network_error"

    def __init__(self, operation: str, detail: str | None = None) -> None:
        self.operation = operation
        message = f"Booking backend unavailable during '{operation}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=message)


class BackendError(AppException):
    """Backend answered with a non-success status."""

    code = "backend_error"

    def __init__(self, operation: str, status_code: int, detail: str | None = None) -> None:
        self.operation = operation
        self.backend_status = status_code
        message = f"Booking backend rejected '{operation}' ({status_code})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=message)


class InconsistentStateError(AppException):
    """Money moved but the dependent status commit did not.

    Requires explicit operator acknowledgement before any further automated
    action on the booking.
    """

    code = "inconsistent_state"

    def __init__(
        self,
        booking_id: str,
        operation: str,
        detail: str | None = None,
        flag_id: str | None = None,
    ) -> None:
        self.booking_id = booking_id
        self.operation = operation
        self.flag_id = flag_id
        message = (
            f"Booking '{booking_id}' is in an inconsistent state after {operation}; "
            "operator acknowledgement required"
        )
        if detail:
            message = f"{message}: {detail}"
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=message)
