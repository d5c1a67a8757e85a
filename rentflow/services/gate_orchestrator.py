"""Payment gate orchestration.

Flow for a gated transition:

    request_transition -> GATE_REQUIRED
    start_checkout     -> intent saved, then checkout session created, redirect
    (process may die here; only the SQL store and the backend survive)
    handle_checkout_return / resume_if_pending
                       -> settlement verified with the backend
                       -> status committed once, intent cleared

Nothing is committed on the word of a redirect URL. The stored intent says
what was being attempted and the backend says whether it was paid.
"""

import asyncio
import logging
from decimal import Decimal

import httpx

from rentflow.config import settings
from rentflow.core.events import EventChannel, EventKind, event_channel
from rentflow.core.exceptions import (
    AppException,
    BackendError,
    GateNotPayable,
    InconsistentStateError,
    InvalidTransition,
    NetworkError,
    NotFoundError,
    TerminalState,
)
from rentflow.domain.booking_state import STATUS_RANK, BookingStatus, status_engine
from rentflow.domain.payment_gate import (
    PAYMENT_GATES,
    GateKind,
    PaymentMethod,
    gate_amount,
    max_damage_capture,
    required_gate,
    validate_damage_amount,
)
from rentflow.domain.payment_state import SETTLEMENT_FINAL_FAILURES, SettlementStatus
from rentflow.gateways.base import BookingBackend
from rentflow.schemas.booking import Booking, CompanyPolicy
from rentflow.schemas.intent import IdentitySnapshot, TransitionIntent
from rentflow.schemas.orchestration import (
    BulkResumeItem,
    BulkResumeResult,
    CheckoutRedirect,
    CheckoutReturnResult,
    DamageReviewResult,
    GatePrompt,
    ResumeResult,
    ResumeStatus,
    TransitionOutcome,
    TransitionResult,
)
from rentflow.services.audit_service import AuditService, audit_service
from rentflow.services.progress_poller import (
    PollerRegistry,
    PollHandle,
    PollOptions,
    PollOutcome,
    PollResult,
    ProgressState,
    background_job_probe,
    poller_registry,
    settlement_probe,
)
from rentflow.services.resumption_store import ResumptionStore

logger = logging.getLogger(__name__)

CHECKOUT_SUCCESS = "success"
CHECKOUT_CANCEL = "cancel"


def settlement_job_key(booking_id: str) -> str:
    return f"settlement:{booking_id}"


def background_job_key(job_id: str) -> str:
    return f"job:{job_id}"


def _reached(current: BookingStatus, target: BookingStatus) -> bool:
    """True if `current` is `target` or a forward status past it."""
    if current == target:
        return True
    if current in STATUS_RANK and target in STATUS_RANK:
        return STATUS_RANK[current] > STATUS_RANK[target]
    return False


class PaymentGateOrchestrator:
    """Drives bookings through payment gates and commits transitions."""

    def __init__(
        self,
        backend: BookingBackend,
        store: ResumptionStore,
        events: EventChannel | None = None,
        audit: AuditService | None = None,
        registry: PollerRegistry | None = None,
        return_url: str | None = None,
    ) -> None:
        self.backend = backend
        self.store = store
        self.events = events or event_channel
        self.audit = audit or audit_service
        self.registry = registry or poller_registry
        self.return_url = return_url or settings.checkout_return_url
        self._resume_locks: dict[str, asyncio.Lock] = {}
        self._resume_users: dict[str, int] = {}

    # ==================== COMMIT ====================

    async def commit(
        self,
        booking: Booking,
        target: BookingStatus,
        damage_capture_amount: Decimal | None = None,
    ) -> Booking:
        """Validate and write a status change. The write is a set, so repeating it is harmless."""
        status_engine.validate(booking.status, target)
        updated = await self.backend.update_booking_status(
            booking.id, target, damage_capture_amount=damage_capture_amount
        )
        logger.info(f"Booking {booking.id}: {booking.status.value} → {target.value}")
        await self.events.publish(
            EventKind.TRANSITION_COMMITTED,
            booking.id,
            f"Booking moved to {target.value}",
            previous=booking.status.value,
            status=target.value,
        )
        return updated

    # ==================== GATES ====================

    async def request_transition(
        self,
        booking: Booking,
        target: BookingStatus | str,
        policy: CompanyPolicy,
    ) -> TransitionResult:
        """Commit a transition, or report which gate must be satisfied first.

        Raises:
            TerminalState: booking is Completed or Cancelled
            InvalidTransition: target is not the next legal step
            InconsistentStateError: booking has an unacknowledged inconsistency
        """
        target = BookingStatus(target)
        status_engine.validate(booking.status, target)
        await self.audit.ensure_consistent(booking.id, f"transition to {target.value}")

        if target == BookingStatus.CANCELLED:
            if booking.total_payment_ref:
                return TransitionResult(outcome=TransitionOutcome.REFUND_REQUIRED, booking=booking)
            updated = await self.commit(booking, target)
            return TransitionResult(outcome=TransitionOutcome.COMMITTED, booking=updated)

        kind = required_gate(booking, target, policy)
        if kind == GateKind.NONE:
            updated = await self.commit(booking, target)
            return TransitionResult(outcome=TransitionOutcome.COMMITTED, booking=updated)

        prompt = await self.open_gate(kind, booking, target, policy)
        return TransitionResult(outcome=TransitionOutcome.GATE_REQUIRED, booking=booking, gate=prompt)

    async def open_gate(
        self,
        kind: GateKind,
        booking: Booking,
        target: BookingStatus,
        policy: CompanyPolicy,
    ) -> GatePrompt:
        """Describe what the operator has to do to get past a gate."""
        if kind in PAYMENT_GATES:
            prompt = GatePrompt(
                kind=kind,
                booking_id=booking.id,
                target_status=target,
                amount_due=gate_amount(booking, kind, policy),
                currency=booking.currency or policy.currency,
                payment_methods=[PaymentMethod.TERMINAL, PaymentMethod.HOSTED_CHECKOUT],
            )
        else:
            maximum = max_damage_capture(booking, policy)
            prompt = GatePrompt(
                kind=kind,
                booking_id=booking.id,
                target_status=target,
                currency=booking.currency or policy.currency,
                max_damage_amount=maximum,
                can_capture=bool(booking.deposit_auth_ref) and maximum > 0,
            )

        await self.events.publish(
            EventKind.GATE_OPENED,
            booking.id,
            f"{kind.value} required before {target.value}",
            gate=kind.value,
            amount_due=prompt.amount_due,
        )
        return prompt

    def checkout_return_urls(self, booking_id: str, kind: GateKind) -> tuple[str, str]:
        """Success and cancel URLs the hosted checkout sends the browser back to."""
        base = httpx.URL(self.return_url)
        params = {"booking": booking_id, "gate": kind.value}
        success = base.copy_merge_params({**params, "checkout": CHECKOUT_SUCCESS})
        cancel = base.copy_merge_params({**params, "checkout": CHECKOUT_CANCEL})
        return str(success), str(cancel)

    async def start_checkout(
        self,
        booking: Booking,
        kind: GateKind | str,
        target: BookingStatus | str,
        policy: CompanyPolicy,
        identity: IdentitySnapshot | None = None,
    ) -> CheckoutRedirect:
        """Save the intent, then create the hosted checkout session.

        The intent is written first so that a return from the provider always
        finds it. If the session cannot be created the intent is removed again
        and the error propagates.
        """
        kind = GateKind(kind)
        target = BookingStatus(target)
        if kind not in PAYMENT_GATES:
            raise GateNotPayable(kind.value)
        status_engine.validate(booking.status, target)
        await self.audit.ensure_consistent(booking.id, "checkout")

        amount = gate_amount(booking, kind, policy)
        intent = TransitionIntent(booking_id=booking.id, target_status=target, gate_kind=kind)
        await self.store.set(booking.id, intent)
        if identity is not None:
            await self.store.save_identity(booking.id, identity)

        success_url, cancel_url = self.checkout_return_urls(booking.id, kind)
        try:
            session = await self.backend.create_checkout_session(
                booking.id, kind, amount, success_url, cancel_url
            )
        except Exception:
            logger.error(f"Checkout session for booking {booking.id} failed; clearing intent")
            await self.store.clear(booking.id)
            raise

        intent.checkout_session_url = session.session_url
        await self.store.set(booking.id, intent)

        await self.events.publish(
            EventKind.CHECKOUT_STARTED,
            booking.id,
            f"Redirecting to checkout for {kind.value}",
            gate=kind.value,
            amount=amount,
            session_id=session.session_id,
        )
        return CheckoutRedirect(
            booking_id=booking.id,
            gate_kind=kind,
            session_url=session.session_url,
            session_id=session.session_id,
        )

    async def confirm_in_person(
        self,
        booking_id: str,
        target: BookingStatus | str,
        policy: CompanyPolicy,
    ) -> TransitionResult:
        """Commit after an in-person terminal payment, once the backend reflects it."""
        target = BookingStatus(target)
        booking = await self.backend.get_booking(booking_id)
        status_engine.validate(booking.status, target)
        await self.audit.ensure_consistent(booking_id, "in-person confirmation")

        kind = required_gate(booking, target, policy)
        if kind != GateKind.NONE:
            logger.info(f"In-person payment for booking {booking_id} not yet reflected ({kind.value})")
            prompt = await self.open_gate(kind, booking, target, policy)
            return TransitionResult(
                outcome=TransitionOutcome.GATE_REQUIRED, booking=booking, gate=prompt
            )

        updated = await self.commit(booking, target)
        # A checkout may have been started before the terminal was used
        await self.store.clear(booking_id)
        return TransitionResult(outcome=TransitionOutcome.COMMITTED, booking=updated)

    # ==================== DAMAGE REVIEW ====================

    async def complete_with_damage_review(
        self,
        booking: Booking,
        has_damage: bool,
        damage_amount: Decimal | None,
        policy: CompanyPolicy,
    ) -> DamageReviewResult:
        """Complete a rental, charging the deposit for damage if needed.

        Raises:
            InvalidDamageAmount: amount outside (0, max capturable]; nothing sent
            InconsistentStateError: deposit captured but Completed not committed
        """
        target = BookingStatus.COMPLETED
        status_engine.validate(booking.status, target)
        await self.audit.ensure_consistent(booking.id, "completion")

        if not has_damage:
            updated = await self.commit(booking, target)
            return DamageReviewResult(booking=updated)

        if not booking.deposit_auth_ref:
            logger.info(f"Booking {booking.id} has no deposit hold; damage not captured")
            updated = await self.commit(booking, target)
            await self.events.publish(
                EventKind.CAPTURE_SKIPPED,
                booking.id,
                "Damage reported but no deposit is held; completed without capture",
                damage_amount=damage_amount,
            )
            return DamageReviewResult(booking=updated, capture_skipped=True)

        amount = validate_damage_amount(booking, damage_amount or Decimal("0"), policy)
        capture = await self.backend.capture_security_deposit(booking.id, amount)
        logger.info(f"Captured {capture.captured_amount} from deposit on booking {booking.id}")
        await self.events.publish(
            EventKind.DAMAGE_CAPTURED,
            booking.id,
            f"Captured {capture.captured_amount} for damage",
            amount=capture.captured_amount,
            ref=capture.ref,
        )

        try:
            updated = await self.commit(
                booking, target, damage_capture_amount=capture.captured_amount
            )
        except Exception as e:
            flag = await self.audit.record_inconsistency(
                booking.id,
                AuditService.OPERATION_DAMAGE_CAPTURE,
                capture.captured_amount,
                target,
                external_ref=capture.ref,
                error_message=str(e),
            )
            await self.events.publish(
                EventKind.INCONSISTENT_STATE,
                booking.id,
                "Deposit captured but booking not completed",
                flag_id=flag.id,
                amount=capture.captured_amount,
            )
            raise InconsistentStateError(
                booking.id, "damage_capture", detail=str(e), flag_id=flag.id
            ) from e

        return DamageReviewResult(booking=updated, captured_amount=capture.captured_amount)

    # ==================== RESUMPTION ====================

    async def resume_if_pending(self, booking_id: str) -> ResumeResult:
        """Finish a transition interrupted by the checkout redirect.

        Safe to call any number of times, including concurrently: overlapping
        calls for one booking are serialized and at most one commits.
        """
        lock = self._resume_locks.setdefault(booking_id, asyncio.Lock())
        self._resume_users[booking_id] = self._resume_users.get(booking_id, 0) + 1
        try:
            async with lock:
                return await self._resume(booking_id)
        finally:
            # Last caller out drops the lock
            self._resume_users[booking_id] -= 1
            if not self._resume_users[booking_id]:
                del self._resume_users[booking_id]
                del self._resume_locks[booking_id]

    async def resume_all_pending(self, booking_ids: list[str] | None = None) -> BulkResumeResult:
        """Resume many bookings, or every booking with a stored intent when none are given.

        Bookings are processed one after another. A booking that fails is
        reported in its entry and the rest are still processed.
        """
        if booking_ids is None:
            booking_ids = await self.store.pending_booking_ids()

        items: list[BulkResumeItem] = []
        for booking_id in dict.fromkeys(booking_ids):
            try:
                result = await self.resume_if_pending(booking_id)
            except AppException as e:
                logger.warning(f"Bulk resume of booking {booking_id} failed: {e.detail}")
                items.append(BulkResumeItem(booking_id=booking_id, error=str(e.detail), code=e.code))
                continue
            items.append(
                BulkResumeItem(
                    booking_id=booking_id,
                    status=result.status,
                    already_applied=result.already_applied,
                )
            )

        summary = BulkResumeResult.from_items(items)
        logger.info(
            f"Bulk resume: {summary.committed_count}/{summary.total_processed} committed, "
            f"{summary.failed_count} failed"
        )
        return summary

    async def _resume(self, booking_id: str) -> ResumeResult:
        intent = await self.store.get(booking_id)
        if intent is None:
            return ResumeResult(status=ResumeStatus.NO_INTENT, booking_id=booking_id)

        try:
            settlement = await self.backend.get_payment_settlement_status(
                booking_id, intent.gate_kind
            )
        except (NetworkError, BackendError) as e:
            logger.warning(f"Settlement check for booking {booking_id} failed, keeping intent: {e}")
            return await self._pending(intent)

        outcome = settlement.outcome
        if outcome in SETTLEMENT_FINAL_FAILURES:
            logger.info(f"Payment for booking {booking_id} {outcome.value}; abandoning intent")
            await self.store.clear(booking_id)
            await self.events.publish(
                EventKind.INTENT_ABANDONED,
                booking_id,
                f"Payment {outcome.value}; nothing committed",
                gate=intent.gate_kind.value,
            )
            return ResumeResult(status=ResumeStatus.ABANDONED, booking_id=booking_id, intent=intent)
        if outcome != SettlementStatus.SETTLED:
            return await self._pending(intent)

        try:
            booking = await self.backend.get_booking(booking_id)
        except NetworkError as e:
            logger.warning(f"Could not re-read booking {booking_id} after settlement: {e}")
            return await self._pending(intent)

        if _reached(booking.status, intent.target_status):
            logger.info(f"Booking {booking_id} already {booking.status.value}; skipping commit")
            await self.store.clear(booking_id)
            return ResumeResult(
                status=ResumeStatus.COMMITTED,
                booking_id=booking_id,
                intent=intent,
                booking=booking,
                already_applied=True,
            )

        await self.audit.ensure_consistent(booking_id, "resume")
        try:
            updated = await self.commit(booking, intent.target_status)
        except (InvalidTransition, TerminalState) as e:
            # The booking moved elsewhere while the customer was paying
            logger.warning(f"Stored intent for booking {booking_id} no longer applies: {e}")
            await self.store.clear(booking_id)
            await self.events.publish(
                EventKind.INTENT_ABANDONED,
                booking_id,
                f"Booking is {booking.status.value}; {intent.target_status.value} no longer possible",
                gate=intent.gate_kind.value,
            )
            return ResumeResult(
                status=ResumeStatus.ABANDONED, booking_id=booking_id, intent=intent, booking=booking
            )

        await self.store.clear(booking_id)
        return ResumeResult(
            status=ResumeStatus.COMMITTED, booking_id=booking_id, intent=intent, booking=updated
        )

    async def _pending(self, intent: TransitionIntent) -> ResumeResult:
        await self.events.publish(
            EventKind.PAYMENT_PENDING,
            intent.booking_id,
            "Payment not settled yet; will retry",
            gate=intent.gate_kind.value,
        )
        return ResumeResult(status=ResumeStatus.PENDING, booking_id=intent.booking_id, intent=intent)

    async def handle_checkout_return(
        self,
        booking_id: str,
        gate_flag: str | None = None,
        outcome_flag: str | None = None,
    ) -> CheckoutReturnResult:
        """Entry point when the browser lands back from the hosted checkout.

        The query flags are only hints; the stored intent is authoritative.
        """
        identity = await self.store.consume_identity(booking_id)

        intent = await self.store.get(booking_id)
        if intent is not None and gate_flag and gate_flag != intent.gate_kind.value:
            logger.warning(
                f"Checkout return for booking {booking_id} claims gate {gate_flag}, "
                f"stored intent is {intent.gate_kind.value}; using stored intent"
            )

        if outcome_flag == CHECKOUT_CANCEL:
            resume = await self.abandon_gate(booking_id)
        else:
            resume = await self.resume_if_pending(booking_id)
        return CheckoutReturnResult(resume=resume, identity=identity)

    async def abandon_gate(self, booking_id: str) -> ResumeResult:
        """Drop the stored intent after the operator or customer backed out."""
        intent = await self.store.get(booking_id)
        if intent is None:
            return ResumeResult(status=ResumeStatus.NO_INTENT, booking_id=booking_id)

        await self.store.clear(booking_id)
        self.registry.cancel(settlement_job_key(booking_id))
        await self.events.publish(
            EventKind.INTENT_ABANDONED,
            booking_id,
            "Checkout cancelled; booking unchanged",
            gate=intent.gate_kind.value,
        )
        return ResumeResult(status=ResumeStatus.ABANDONED, booking_id=booking_id, intent=intent)

    # ==================== POLLING ====================

    async def watch_settlement(self, booking_id: str, options: PollOptions | None = None) -> PollHandle:
        """Poll the backend until the pending payment settles, then resume.

        Raises:
            NotFoundError: no stored intent for the booking
        """
        intent = await self.store.get(booking_id)
        if intent is None:
            raise NotFoundError("Transition intent", booking_id)

        async def on_done(result: PollResult) -> None:
            if result.outcome in (PollOutcome.COMPLETED, PollOutcome.FAILED):
                await self.resume_if_pending(booking_id)

        return self.registry.watch(
            settlement_job_key(booking_id),
            settlement_probe(self.backend, booking_id, intent.gate_kind),
            options,
            on_done=on_done,
        )

    def watch_background_job(self, job_id: str, options: PollOptions | None = None) -> PollHandle:
        """Follow a backend job's progress, emitting an event per reading."""

        async def on_progress(state: ProgressState) -> None:
            await self.events.publish(
                EventKind.JOB_PROGRESS,
                None,
                f"Job {job_id}: {state.status} {state.progress:.0f}%",
                job_id=job_id,
                progress=state.progress,
                status=state.status,
            )

        return self.registry.watch(
            background_job_key(job_id),
            background_job_probe(self.backend, job_id),
            options,
            on_progress=on_progress,
        )
