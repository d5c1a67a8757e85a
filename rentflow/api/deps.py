"""API dependencies: shared service instances and booking lookup."""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from rentflow.gateways.base import BookingBackend
from rentflow.gateways.http_backend import HttpBookingBackend
from rentflow.schemas.booking import Booking
from rentflow.services.audit_service import AuditService, audit_service
from rentflow.services.gate_orchestrator import PaymentGateOrchestrator
from rentflow.services.refund_coordinator import RefundCoordinator
from rentflow.services.resumption_store import SqlResumptionStore


@lru_cache
def get_backend() -> BookingBackend:
    return HttpBookingBackend()


@lru_cache
def get_orchestrator() -> PaymentGateOrchestrator:
    """Process-wide orchestrator; resume locks only work if it is shared."""
    return PaymentGateOrchestrator(get_backend(), SqlResumptionStore(), audit=audit_service)


@lru_cache
def get_refund_coordinator() -> RefundCoordinator:
    return RefundCoordinator(get_orchestrator())


def get_audit_service() -> AuditService:
    return audit_service


async def get_booking(
    booking_id: str,
    orchestrator: Annotated[PaymentGateOrchestrator, Depends(get_orchestrator)],
) -> Booking:
    """Fresh booking view from the backend; callers never post booking state."""
    return await orchestrator.backend.get_booking(booking_id)


Orchestrator = Annotated[PaymentGateOrchestrator, Depends(get_orchestrator)]
Refunds = Annotated[RefundCoordinator, Depends(get_refund_coordinator)]
Audit = Annotated[AuditService, Depends(get_audit_service)]
CurrentBooking = Annotated[Booking, Depends(get_booking)]
