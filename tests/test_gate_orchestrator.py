import asyncio
from decimal import Decimal
from urllib.parse import parse_qs, urlsplit

import pytest

from rentflow.core.events import EventKind
from rentflow.core.exceptions import (
    BackendError,
    GateNotPayable,
    InconsistentStateError,
    InvalidDamageAmount,
    InvalidTransition,
    NetworkError,
    TerminalState,
)
from rentflow.domain.booking_state import BookingStatus
from rentflow.domain.payment_gate import GateKind, PaymentMethod
from rentflow.domain.payment_state import PaymentStatus
from rentflow.schemas.booking import PaymentSettlement
from rentflow.schemas.intent import IdentitySnapshot
from rentflow.schemas.orchestration import ResumeStatus, TransitionOutcome
from rentflow.services.progress_poller import PollOptions, PollOutcome
from rentflow.services.resumption_store import SqlResumptionStore

from conftest import make_booking

FAST = PollOptions(interval_ms=1, max_consecutive_errors=3, max_consecutive_empty_responses=3)


def kinds(recorded_events):
    return [event.kind for event in recorded_events]


# ==================== REQUEST TRANSITION ====================


@pytest.mark.asyncio
async def test_unpaid_confirmation_opens_total_payment_gate(orchestrator, backend, policy, recorded_events):
    booking = backend.add(make_booking(total_amount=Decimal("250")))

    result = await orchestrator.request_transition(booking, BookingStatus.CONFIRMED, policy)

    assert result.outcome == TransitionOutcome.GATE_REQUIRED
    assert result.gate.kind == GateKind.TOTAL_PAYMENT
    assert result.gate.amount_due == Decimal("250")
    assert result.gate.payment_methods == [PaymentMethod.TERMINAL, PaymentMethod.HOSTED_CHECKOUT]
    assert backend.calls_to("update_booking_status") == []
    assert backend.bookings["b1"].status == BookingStatus.PENDING
    assert EventKind.GATE_OPENED in kinds(recorded_events)


@pytest.mark.asyncio
async def test_activation_with_existing_hold_commits_immediately(orchestrator, backend, policy):
    booking = backend.add(
        make_booking(
            status=BookingStatus.CONFIRMED,
            payment_status="Paid",
            deposit_auth_ref="pi_hold",
            security_deposit_amount=Decimal("500"),
        )
    )

    result = await orchestrator.request_transition(booking, BookingStatus.ACTIVE, policy)

    assert result.outcome == TransitionOutcome.COMMITTED
    assert result.booking.status == BookingStatus.ACTIVE
    assert backend.calls_to("update_booking_status") == [("b1", BookingStatus.ACTIVE, None)]


@pytest.mark.asyncio
async def test_invalid_transition_makes_no_backend_call(orchestrator, backend, policy):
    booking = backend.add(make_booking())
    with pytest.raises(InvalidTransition):
        await orchestrator.request_transition(booking, BookingStatus.COMPLETED, policy)
    assert backend.calls == []


@pytest.mark.asyncio
async def test_terminal_booking_is_rejected(orchestrator, backend, policy):
    booking = backend.add(make_booking(status=BookingStatus.CANCELLED))
    with pytest.raises(TerminalState):
        await orchestrator.request_transition(booking, BookingStatus.CONFIRMED, policy)
    assert backend.calls == []


@pytest.mark.asyncio
async def test_cancel_paid_booking_requires_refund_decision(orchestrator, backend, policy):
    booking = backend.add(
        make_booking(status=BookingStatus.CONFIRMED, payment_status="Paid", total_payment_ref="pi_1")
    )
    result = await orchestrator.request_transition(booking, BookingStatus.CANCELLED, policy)
    assert result.outcome == TransitionOutcome.REFUND_REQUIRED
    assert backend.calls_to("update_booking_status") == []


@pytest.mark.asyncio
async def test_cancel_unpaid_booking_commits(orchestrator, backend, policy):
    booking = backend.add(make_booking())
    result = await orchestrator.request_transition(booking, BookingStatus.CANCELLED, policy)
    assert result.outcome == TransitionOutcome.COMMITTED
    assert backend.bookings["b1"].status == BookingStatus.CANCELLED


@pytest.mark.asyncio
async def test_open_flag_blocks_transitions(orchestrator, backend, audit, policy):
    booking = backend.add(make_booking(payment_status="Paid"))
    await audit.record_inconsistency("b1", "refund", Decimal("10"), BookingStatus.CANCELLED)

    with pytest.raises(InconsistentStateError):
        await orchestrator.request_transition(booking, BookingStatus.CONFIRMED, policy)
    assert backend.calls_to("update_booking_status") == []


# ==================== CHECKOUT ====================


@pytest.mark.asyncio
async def test_intent_is_persisted_before_session_is_created(orchestrator, backend, store, policy):
    booking = backend.add(make_booking())
    seen = {}

    async def check_store(booking_id):
        seen["intent"] = await store.get(booking_id)

    backend.on_checkout = check_store
    redirect = await orchestrator.start_checkout(
        booking, GateKind.TOTAL_PAYMENT, BookingStatus.CONFIRMED, policy
    )

    assert seen["intent"] is not None
    assert seen["intent"].target_status == BookingStatus.CONFIRMED
    assert redirect.session_url == "https://pay.example/cs_b1"
    stored = await store.get("b1")
    assert stored.checkout_session_url == redirect.session_url


@pytest.mark.asyncio
async def test_checkout_urls_carry_booking_gate_and_outcome(orchestrator, backend, policy):
    booking = backend.add(make_booking())
    await orchestrator.start_checkout(booking, GateKind.TOTAL_PAYMENT, BookingStatus.CONFIRMED, policy)

    (_, kind, amount, success_url, cancel_url), = backend.calls_to("create_checkout_session")
    assert kind == GateKind.TOTAL_PAYMENT
    assert amount == Decimal("250")
    success = parse_qs(urlsplit(success_url).query)
    cancel = parse_qs(urlsplit(cancel_url).query)
    assert success == {"booking": ["b1"], "gate": ["total_payment"], "checkout": ["success"]}
    assert cancel["checkout"] == ["cancel"]


@pytest.mark.asyncio
async def test_failed_session_creation_clears_intent(orchestrator, backend, store, policy):
    booking = backend.add(make_booking())

    async def fail(booking_id):
        raise BackendError("create_checkout_session", 500, "provider down")

    backend.on_checkout = fail
    with pytest.raises(BackendError):
        await orchestrator.start_checkout(booking, GateKind.TOTAL_PAYMENT, BookingStatus.CONFIRMED, policy)
    assert await store.get("b1") is None


@pytest.mark.asyncio
async def test_checkout_for_damage_review_is_rejected(orchestrator, backend, policy):
    booking = backend.add(make_booking(status=BookingStatus.ACTIVE))
    with pytest.raises(GateNotPayable):
        await orchestrator.start_checkout(booking, GateKind.DAMAGE_REVIEW, BookingStatus.COMPLETED, policy)


# ==================== RESUMPTION ====================


async def _start(orchestrator, backend, policy, **booking_fields):
    booking = backend.add(make_booking(**booking_fields))
    await orchestrator.start_checkout(booking, GateKind.TOTAL_PAYMENT, BookingStatus.CONFIRMED, policy)
    return booking


@pytest.mark.asyncio
async def test_unsettled_payment_keeps_intent_after_reload(orchestrator, backend, session_factory, policy, recorded_events):
    await _start(orchestrator, backend, policy)
    backend.settlements["b1"] = PaymentSettlement(settled=False)

    # Reload: a brand-new store over the same database
    orchestrator.store = SqlResumptionStore(session_factory)
    result = await orchestrator.resume_if_pending("b1")

    assert result.status == ResumeStatus.PENDING
    assert await orchestrator.store.get("b1") is not None
    assert backend.calls_to("update_booking_status") == []
    assert EventKind.PAYMENT_PENDING in kinds(recorded_events)


@pytest.mark.asyncio
async def test_settled_payment_commits_and_clears_intent(orchestrator, backend, store, policy):
    await _start(orchestrator, backend, policy)
    backend.settlements["b1"] = PaymentSettlement(settled=True, ref="pi_1")

    result = await orchestrator.resume_if_pending("b1")

    assert result.status == ResumeStatus.COMMITTED
    assert not result.already_applied
    assert result.booking.status == BookingStatus.CONFIRMED
    assert await store.get("b1") is None


@pytest.mark.asyncio
async def test_resume_is_idempotent(orchestrator, backend, policy):
    await _start(orchestrator, backend, policy)
    backend.settlements["b1"] = PaymentSettlement(settled=True)

    first = await orchestrator.resume_if_pending("b1")
    second = await orchestrator.resume_if_pending("b1")

    assert first.status == ResumeStatus.COMMITTED
    assert second.status == ResumeStatus.NO_INTENT
    assert len(backend.calls_to("update_booking_status")) == 1


@pytest.mark.asyncio
async def test_concurrent_resumes_commit_once(orchestrator, backend, policy):
    await _start(orchestrator, backend, policy)
    backend.settlements["b1"] = PaymentSettlement(settled=True)

    results = await asyncio.gather(*(orchestrator.resume_if_pending("b1") for _ in range(3)))

    assert sorted(r.status for r in results) == [
        ResumeStatus.COMMITTED,
        ResumeStatus.NO_INTENT,
        ResumeStatus.NO_INTENT,
    ]
    assert len(backend.calls_to("update_booking_status")) == 1
    assert orchestrator._resume_locks == {}


@pytest.mark.asyncio
async def test_resume_skips_commit_when_backend_already_at_target(orchestrator, backend, store, policy):
    await _start(orchestrator, backend, policy)
    backend.settlements["b1"] = PaymentSettlement(settled=True)
    backend.bookings["b1"].status = BookingStatus.CONFIRMED

    result = await orchestrator.resume_if_pending("b1")

    assert result.status == ResumeStatus.COMMITTED
    assert result.already_applied
    assert backend.calls_to("update_booking_status") == []
    assert await store.get("b1") is None


@pytest.mark.asyncio
async def test_failed_payment_abandons_intent(orchestrator, backend, store, policy):
    await _start(orchestrator, backend, policy)
    backend.settlements["b1"] = PaymentSettlement(settled=False, status="payment_failed")

    result = await orchestrator.resume_if_pending("b1")

    assert result.status == ResumeStatus.ABANDONED
    assert await store.get("b1") is None
    assert backend.calls_to("update_booking_status") == []


@pytest.mark.asyncio
async def test_awaiting_payment_method_is_still_pending(orchestrator, backend, store, policy):
    await _start(orchestrator, backend, policy)
    backend.settlements["b1"] = PaymentSettlement(settled=False, status="requires_payment_method")

    result = await orchestrator.resume_if_pending("b1")

    assert result.status == ResumeStatus.PENDING
    assert await store.get("b1") is not None
    assert backend.calls_to("update_booking_status") == []


@pytest.mark.asyncio
async def test_settlement_network_error_is_neutral(orchestrator, backend, store, policy):
    await _start(orchestrator, backend, policy)
    backend.settlements["b1"] = NetworkError("get_payment_settlement_status")

    result = await orchestrator.resume_if_pending("b1")

    assert result.status == ResumeStatus.PENDING
    assert await store.get("b1") is not None


@pytest.mark.asyncio
async def test_commit_failure_keeps_intent_for_retry(orchestrator, backend, store, policy):
    await _start(orchestrator, backend, policy)
    backend.settlements["b1"] = PaymentSettlement(settled=True)
    backend.failures["update_booking_status"] = NetworkError("update_booking_status")

    with pytest.raises(NetworkError):
        await orchestrator.resume_if_pending("b1")
    assert await store.get("b1") is not None

    result = await orchestrator.resume_if_pending("b1")
    assert result.status == ResumeStatus.COMMITTED


@pytest.mark.asyncio
async def test_intent_abandoned_when_booking_was_cancelled_meanwhile(orchestrator, backend, store, policy):
    await _start(orchestrator, backend, policy)
    backend.settlements["b1"] = PaymentSettlement(settled=True)
    backend.bookings["b1"].status = BookingStatus.CANCELLED

    result = await orchestrator.resume_if_pending("b1")

    assert result.status == ResumeStatus.ABANDONED
    assert await store.get("b1") is None
    assert backend.calls_to("update_booking_status") == []


@pytest.mark.asyncio
async def test_no_intent(orchestrator):
    result = await orchestrator.resume_if_pending("nobody")
    assert result.status == ResumeStatus.NO_INTENT


# ==================== BULK RESUME ====================


@pytest.mark.asyncio
async def test_resume_all_pending_walks_stored_intents(orchestrator, backend, store, audit, policy):
    for booking_id in ("A", "B", "C"):
        await _start(orchestrator, backend, policy, id=booking_id)
    backend.settlements["A"] = PaymentSettlement(settled=True)
    backend.settlements["C"] = PaymentSettlement(settled=True)
    await audit.record_inconsistency("C", "refund", Decimal("10"), BookingStatus.CANCELLED)

    summary = await orchestrator.resume_all_pending()

    by_id = {item.booking_id: item for item in summary.results}
    assert summary.total_processed == 3
    assert summary.committed_count == 1
    assert summary.pending_count == 1
    assert summary.failed_count == 1
    assert by_id["A"].status == ResumeStatus.COMMITTED
    assert by_id["B"].status == ResumeStatus.PENDING
    assert by_id["C"].code == "inconsistent_state"
    assert backend.bookings["A"].status == BookingStatus.CONFIRMED
    assert backend.bookings["C"].status == BookingStatus.PENDING
    assert sorted(await store.pending_booking_ids()) == ["B", "C"]


@pytest.mark.asyncio
async def test_resume_all_pending_with_explicit_ids(orchestrator, backend, policy):
    await _start(orchestrator, backend, policy, id="A")
    backend.settlements["A"] = PaymentSettlement(settled=True)

    summary = await orchestrator.resume_all_pending(["A", "A", "nobody"])

    assert [(item.booking_id, item.status) for item in summary.results] == [
        ("A", ResumeStatus.COMMITTED),
        ("nobody", ResumeStatus.NO_INTENT),
    ]
    assert len(backend.calls_to("update_booking_status")) == 1


# ==================== CHECKOUT RETURN ====================


@pytest.mark.asyncio
async def test_return_restores_identity_and_resumes(orchestrator, backend, store, policy):
    booking = backend.add(make_booking())
    identity = IdentitySnapshot(user_id="u1", email="ops@example.com")
    await orchestrator.start_checkout(
        booking, GateKind.TOTAL_PAYMENT, BookingStatus.CONFIRMED, policy, identity=identity
    )
    backend.settlements["b1"] = PaymentSettlement(settled=True)

    result = await orchestrator.handle_checkout_return("b1", "total_payment", "success")

    assert result.identity.user_id == "u1"
    assert result.resume.status == ResumeStatus.COMMITTED
    assert await store.consume_identity("b1") is None


@pytest.mark.asyncio
async def test_overlapping_checkouts_restore_their_own_identity(orchestrator, backend, policy):
    for booking_id, user_id in (("A", "alice"), ("B", "bob")):
        booking = backend.add(make_booking(id=booking_id))
        await orchestrator.start_checkout(
            booking,
            GateKind.TOTAL_PAYMENT,
            BookingStatus.CONFIRMED,
            policy,
            identity=IdentitySnapshot(user_id=user_id),
        )

    first = await orchestrator.handle_checkout_return("A", "total_payment", "success")
    second = await orchestrator.handle_checkout_return("B", "total_payment", "success")

    assert first.identity.user_id == "alice"
    assert second.identity.user_id == "bob"


@pytest.mark.asyncio
async def test_return_trusts_stored_intent_over_flags(orchestrator, backend, policy):
    await _start(orchestrator, backend, policy)
    backend.settlements["b1"] = PaymentSettlement(settled=True)

    result = await orchestrator.handle_checkout_return("b1", "security_deposit", "success")

    assert result.resume.status == ResumeStatus.COMMITTED
    assert result.resume.intent.gate_kind == GateKind.TOTAL_PAYMENT
    assert backend.calls_to("get_payment_settlement_status") == [("b1", GateKind.TOTAL_PAYMENT)]


@pytest.mark.asyncio
async def test_cancel_return_abandons_without_commit(orchestrator, backend, store, policy, recorded_events):
    await _start(orchestrator, backend, policy)

    result = await orchestrator.handle_checkout_return("b1", "total_payment", "cancel")

    assert result.resume.status == ResumeStatus.ABANDONED
    assert await store.get("b1") is None
    assert backend.calls_to("update_booking_status") == []
    assert EventKind.INTENT_ABANDONED in kinds(recorded_events)


@pytest.mark.asyncio
async def test_abandon_gate_without_intent(orchestrator):
    result = await orchestrator.abandon_gate("b1")
    assert result.status == ResumeStatus.NO_INTENT


# ==================== IN-PERSON ====================


@pytest.mark.asyncio
async def test_in_person_commits_once_backend_shows_payment(orchestrator, backend, store, policy):
    await _start(orchestrator, backend, policy)

    pending = await orchestrator.confirm_in_person("b1", BookingStatus.CONFIRMED, policy)
    assert pending.outcome == TransitionOutcome.GATE_REQUIRED

    backend.bookings["b1"].payment_status = PaymentStatus.PAID
    result = await orchestrator.confirm_in_person("b1", BookingStatus.CONFIRMED, policy)

    assert result.outcome == TransitionOutcome.COMMITTED
    assert result.booking.status == BookingStatus.CONFIRMED
    assert await store.get("b1") is None


# ==================== DAMAGE REVIEW ====================


@pytest.mark.asyncio
async def test_completion_without_damage(orchestrator, backend, policy):
    booking = backend.add(make_booking(status=BookingStatus.ACTIVE, deposit_auth_ref="pi_hold"))
    result = await orchestrator.complete_with_damage_review(booking, False, None, policy)
    assert result.booking.status == BookingStatus.COMPLETED
    assert backend.calls_to("capture_security_deposit") == []


@pytest.mark.asyncio
async def test_damage_amount_validated_then_captured(orchestrator, backend, policy, recorded_events):
    booking = backend.add(
        make_booking(
            status=BookingStatus.ACTIVE,
            security_deposit_amount=Decimal("500"),
            deposit_auth_ref="pi_hold",
            deposit_authorized_amount=Decimal("500"),
        )
    )

    with pytest.raises(InvalidDamageAmount):
        await orchestrator.complete_with_damage_review(booking, True, Decimal("600"), policy)
    assert backend.calls_to("capture_security_deposit") == []
    assert backend.calls_to("update_booking_status") == []

    result = await orchestrator.complete_with_damage_review(booking, True, Decimal("300"), policy)

    assert backend.calls_to("capture_security_deposit") == [("b1", Decimal("300"))]
    assert backend.calls_to("update_booking_status") == [("b1", BookingStatus.COMPLETED, Decimal("300"))]
    assert result.captured_amount == Decimal("300")
    assert result.booking.status == BookingStatus.COMPLETED
    assert kinds(recorded_events)[-2:] == [EventKind.DAMAGE_CAPTURED, EventKind.TRANSITION_COMMITTED]


@pytest.mark.asyncio
async def test_damage_without_hold_completes_and_reports_skip(orchestrator, backend, policy, recorded_events):
    booking = backend.add(make_booking(status=BookingStatus.ACTIVE))

    result = await orchestrator.complete_with_damage_review(booking, True, Decimal("100"), policy)

    assert result.capture_skipped
    assert result.booking.status == BookingStatus.COMPLETED
    assert backend.calls_to("capture_security_deposit") == []
    assert EventKind.CAPTURE_SKIPPED in kinds(recorded_events)


@pytest.mark.asyncio
async def test_capture_failure_propagates_without_commit(orchestrator, backend, policy):
    booking = backend.add(make_booking(status=BookingStatus.ACTIVE, deposit_auth_ref="pi_hold"))
    backend.failures["capture_security_deposit"] = BackendError("capture_security_deposit", 402, "declined")

    with pytest.raises(BackendError):
        await orchestrator.complete_with_damage_review(booking, True, Decimal("100"), policy)
    assert backend.calls_to("update_booking_status") == []
    assert len(backend.calls_to("capture_security_deposit")) == 1


@pytest.mark.asyncio
async def test_commit_failure_after_capture_is_flagged(orchestrator, backend, audit, policy):
    booking = backend.add(make_booking(status=BookingStatus.ACTIVE, deposit_auth_ref="pi_hold"))
    backend.failures["update_booking_status"] = NetworkError("update_booking_status")

    with pytest.raises(InconsistentStateError) as exc_info:
        await orchestrator.complete_with_damage_review(booking, True, Decimal("100"), policy)

    flags = await audit.list_flags("b1")
    assert len(flags) == 1
    assert flags[0].operation == "damage_capture"
    assert flags[0].external_ref == "ch_1"
    assert exc_info.value.flag_id == flags[0].id


# ==================== POLLING ====================


@pytest.mark.asyncio
async def test_watch_settlement_resumes_when_settled(orchestrator, backend, store, policy):
    await _start(orchestrator, backend, policy)
    backend.settlements["b1"] = PaymentSettlement(settled=True)

    handle = await orchestrator.watch_settlement("b1", FAST)
    result = await handle.wait()

    assert result.outcome == PollOutcome.COMPLETED
    assert backend.bookings["b1"].status == BookingStatus.CONFIRMED
    assert await store.get("b1") is None


@pytest.mark.asyncio
async def test_watch_background_job_emits_progress(orchestrator, backend, recorded_events):
    backend.job_responses = [{"progress": 50, "status": "processing"}, {"progress": 100}]

    result = await orchestrator.watch_background_job("import-1", FAST).wait()

    assert result.outcome == PollOutcome.COMPLETED
    progress = [e.data["progress"] for e in recorded_events if e.kind == EventKind.JOB_PROGRESS]
    assert progress == [50, 100]
