"""In-process notification channel for orchestration events.

Subscribers (a UI bridge, a toast adapter, a log shipper) receive every event.
A failing subscriber never breaks the flow that emitted the event.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


class EventKind:
    """Event kinds emitted by the orchestrator."""

    GATE_OPENED = "gate_opened"
    CHECKOUT_STARTED = "checkout_started"
    TRANSITION_COMMITTED = "transition_committed"
    PAYMENT_PENDING = "payment_pending"
    INTENT_ABANDONED = "intent_abandoned"
    DAMAGE_CAPTURED = "damage_captured"
    CAPTURE_SKIPPED = "capture_skipped"
    REFUND_ISSUED = "refund_issued"
    INCONSISTENT_STATE = "inconsistent_state"
    JOB_PROGRESS = "job_progress"


@dataclass
class OrchestratorEvent:
    kind: str
    booking_id: str | None
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[OrchestratorEvent], Awaitable[None] | None]


class EventChannel:
    """Fan-out of orchestrator events to subscribers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler (sync or async). Returns an unsubscribe callable."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def emit(self, event: OrchestratorEvent) -> None:
        logger.debug(f"Event {event.kind} booking={event.booking_id}: {event.message}")
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Event handler failed for {event.kind}: {e}")

    async def publish(
        self,
        kind: str,
        booking_id: str | None,
        message: str,
        **data: Any,
    ) -> OrchestratorEvent:
        """Build and emit an event in one call."""
        event = OrchestratorEvent(kind=kind, booking_id=booking_id, message=message, data=data)
        await self.emit(event)
        return event


event_channel = EventChannel()
