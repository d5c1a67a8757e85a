from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from rentflow.core.events import EventChannel, OrchestratorEvent
from rentflow.database import init_db
from rentflow.domain.booking_state import BookingStatus
from rentflow.domain.payment_gate import GateKind
from rentflow.gateways.base import BookingBackend, ProgressSnapshot
from rentflow.schemas.booking import (
    Booking,
    CaptureResult,
    CheckoutSession,
    CompanyPolicy,
    PaymentSettlement,
    RefundRecord,
)
from rentflow.services.audit_service import AuditService
from rentflow.services.gate_orchestrator import PaymentGateOrchestrator
from rentflow.services.progress_poller import PollerRegistry
from rentflow.services.refund_coordinator import RefundCoordinator
from rentflow.services.resumption_store import SqlResumptionStore


def make_booking(**overrides: Any) -> Booking:
    data: dict[str, Any] = {
        "id": "b1",
        "booking_number": "RF-0001",
        "status": BookingStatus.PENDING,
        "total_amount": Decimal("250"),
        "security_deposit_amount": Decimal("500"),
        "payment_status": "Unpaid",
    }
    data.update(overrides)
    return Booking(**data)


class FakeBackend(BookingBackend):
    """In-memory booking backend with call log and failure injection."""

    def __init__(self) -> None:
        self.bookings: dict[str, Booking] = {}
        self.settlements: dict[str, PaymentSettlement | Exception] = {}
        self.job_responses: list[ProgressSnapshot | dict | None | Exception] = []
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, tuple]] = []
        self.on_checkout: Callable[[str], Awaitable[None]] | None = None

    def add(self, booking: Booking) -> Booking:
        self.bookings[booking.id] = booking.model_copy(deep=True)
        return booking

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.failures:
            raise self.failures.pop(name)

    def calls_to(self, name: str) -> list[tuple]:
        return [args for call, args in self.calls if call == name]

    async def get_booking(self, booking_id: str) -> Booking:
        self._record("get_booking", booking_id)
        return self.bookings[booking_id].model_copy(deep=True)

    async def update_booking_status(
        self,
        booking_id: str,
        status: BookingStatus,
        damage_capture_amount: Decimal | None = None,
    ) -> Booking:
        self._record("update_booking_status", booking_id, status, damage_capture_amount)
        booking = self.bookings[booking_id]
        booking.status = status
        return booking.model_copy(deep=True)

    async def refund_payment(self, booking_id: str, amount: Decimal, reason: str) -> RefundRecord:
        self._record("refund_payment", booking_id, amount, reason)
        record = RefundRecord(id=f"re_{uuid.uuid4().hex[:8]}", amount=amount, reason=reason)
        self.bookings[booking_id].refunds.append(record)
        return record

    async def capture_security_deposit(self, booking_id: str, amount: Decimal) -> CaptureResult:
        self._record("capture_security_deposit", booking_id, amount)
        self.bookings[booking_id].deposit_captured_amount += amount
        return CaptureResult(captured_amount=amount, ref="ch_1")

    async def create_checkout_session(
        self,
        booking_id: str,
        kind: GateKind,
        amount: Decimal,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        if self.on_checkout is not None:
            await self.on_checkout(booking_id)
        self._record("create_checkout_session", booking_id, kind, amount, success_url, cancel_url)
        return CheckoutSession(session_url=f"https://pay.example/cs_{booking_id}", session_id="cs_1")

    async def get_payment_settlement_status(self, booking_id: str, kind: GateKind) -> PaymentSettlement:
        self._record("get_payment_settlement_status", booking_id, kind)
        answer = self.settlements.get(booking_id, PaymentSettlement(settled=False))
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def get_background_job_progress(self, job_id: str) -> ProgressSnapshot | None:
        self._record("get_background_job_progress", job_id)
        response = self.job_responses.pop(0) if self.job_responses else None
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            return ProgressSnapshot.from_payload(response)
        return response


@pytest.fixture
def policy() -> CompanyPolicy:
    return CompanyPolicy(deposit_mandatory=True, default_security_deposit=Decimal("300"))


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rentflow.db'}")
    await init_db(bind=engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> SqlResumptionStore:
    return SqlResumptionStore(session_factory)


@pytest.fixture
def audit(session_factory) -> AuditService:
    return AuditService(session_factory)


@pytest.fixture
def recorded_events() -> list[OrchestratorEvent]:
    return []


@pytest.fixture
def events(recorded_events) -> EventChannel:
    channel = EventChannel()
    channel.subscribe(recorded_events.append)
    return channel


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def orchestrator(backend, store, events, audit) -> PaymentGateOrchestrator:
    return PaymentGateOrchestrator(
        backend,
        store,
        events=events,
        audit=audit,
        registry=PollerRegistry(),
        return_url="http://console.test/admin/reservations",
    )


@pytest.fixture
def refunds(orchestrator) -> RefundCoordinator:
    return RefundCoordinator(orchestrator)
