"""Core utilities: errors, events and middleware."""

from rentflow.core.events import EventChannel, EventKind, OrchestratorEvent
from rentflow.core.exceptions import (
    AppException,
    BackendError,
    BookingNotRefundable,
    GateNotPayable,
    InconsistentStateError,
    InvalidDamageAmount,
    InvalidRefundAmount,
    InvalidTransition,
    MissingPaymentReference,
    NetworkError,
    NotFoundError,
    TerminalState,
)

__all__ = [
    "EventChannel",
    "EventKind",
    "OrchestratorEvent",
    "AppException",
    "BackendError",
    "BookingNotRefundable",
    "GateNotPayable",
    "InconsistentStateError",
    "InvalidDamageAmount",
    "InvalidRefundAmount",
    "InvalidTransition",
    "MissingPaymentReference",
    "NetworkError",
    "NotFoundError",
    "TerminalState",
]
