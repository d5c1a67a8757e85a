"""Bounded polling of long-running backend work.

A poll probes immediately and then every `interval_ms` until the job finishes,
fails, stops answering, or runs out of time. It never polls forever: repeated
probe errors or empty responses end it with an UNKNOWN outcome.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rentflow.config import settings
from rentflow.domain.payment_gate import GateKind
from rentflow.domain.payment_state import SETTLEMENT_FINAL_FAILURES, SettlementStatus
from rentflow.gateways.base import BookingBackend, JobStatus, ProgressSnapshot

logger = logging.getLogger(__name__)

ProbeResponse = ProgressSnapshot | Mapping[str, Any] | None
Probe = Callable[[], Awaitable[ProbeResponse]]


@dataclass
class PollOptions:
    """Polling cadence and limits."""

    interval_ms: int = field(default_factory=lambda: settings.poll_interval_ms)
    max_consecutive_errors: int = field(
        default_factory=lambda: settings.poll_max_consecutive_errors
    )
    max_consecutive_empty_responses: int = field(
        default_factory=lambda: settings.poll_max_consecutive_empty_responses
    )
    max_duration_ms: int | None = field(default_factory=lambda: settings.poll_max_duration_ms)

    def __post_init__(self) -> None:
        if self.interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        if self.max_consecutive_errors < 1 or self.max_consecutive_empty_responses < 1:
            raise ValueError("poll limits must be at least 1")
        if self.max_duration_ms is not None and self.max_duration_ms <= 0:
            raise ValueError("max_duration_ms must be positive")


@dataclass
class ProgressState:
    """Live view of one poll."""

    job_id: str | None = None
    progress: float = 0.0
    status: str = JobStatus.PENDING
    consecutive_errors: int = 0
    consecutive_empty_responses: int = 0
    attempts: int = 0


class PollOutcome(str, Enum):
    """How a poll ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    outcome: PollOutcome
    state: ProgressState
    error: BaseException | None = None


ProgressCallback = Callable[[ProgressState], Awaitable[None] | None]
DoneCallback = Callable[[PollResult], Awaitable[None] | None]


async def _call(callback: Callable[..., Any] | None, arg: Any, what: str) -> None:
    if callback is None:
        return
    try:
        result = callback(arg)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning(f"Poll {what} callback failed: {e}")


def _normalize(response: ProbeResponse) -> ProgressSnapshot | None:
    if response is None or isinstance(response, ProgressSnapshot):
        return response
    if isinstance(response, Mapping):
        return ProgressSnapshot.from_payload(dict(response))
    return None


class PollHandle:
    """One running poll. Owns exactly one timer task."""

    def __init__(
        self,
        probe: Probe,
        options: PollOptions,
        job_id: str | None = None,
        on_progress: ProgressCallback | None = None,
        on_done: DoneCallback | None = None,
    ) -> None:
        self.probe = probe
        self.options = options
        self.state = ProgressState(job_id=job_id)
        self._on_progress = on_progress
        self._on_done = on_done
        self._alive = True
        self._result: PollResult | None = None
        self._task: asyncio.Task | None = None
        self.finished_at: float | None = None

    @property
    def job_id(self) -> str | None:
        return self.state.job_id

    @property
    def active(self) -> bool:
        return self._alive and self._task is not None and not self._task.done()

    @property
    def result(self) -> PollResult | None:
        return self._result

    def start(self) -> "PollHandle":
        if self._task is not None:
            raise RuntimeError("poll already started")
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    def cancel(self) -> bool:
        """Stop polling. Returns False if the poll had already finished."""
        if not self._alive or self._result is not None:
            return False
        self._alive = False
        self._result = PollResult(PollOutcome.CANCELLED, self.state)
        self.finished_at = time.monotonic()
        if self._task is not None:
            self._task.cancel()
        logger.debug(f"Poll for {self.job_id} cancelled after {self.state.attempts} attempts")
        return True

    async def wait(self) -> PollResult:
        """Wait for the poll to end and return its result."""
        if self._task is not None:
            try:
                await asyncio.shield(self._task)
            except asyncio.CancelledError:
                if not self._task.cancelled():
                    raise
        if self._result is None:
            self._result = PollResult(PollOutcome.CANCELLED, self.state)
            self.finished_at = time.monotonic()
        return self._result

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        interval = self.options.interval_ms / 1000
        deadline = (
            started + self.options.max_duration_ms / 1000
            if self.options.max_duration_ms is not None
            else None
        )

        result: PollResult | None = None
        while result is None:
            if deadline is not None and loop.time() >= deadline:
                result = PollResult(PollOutcome.TIMED_OUT, self.state)
                break

            result = await self._tick(deadline)
            if result is not None or not self._alive:
                break

            delay = interval
            if deadline is not None:
                delay = min(interval, max(0.0, deadline - loop.time()))
            await asyncio.sleep(delay)

        if not self._alive or result is None:
            return
        self._alive = False
        self._result = result
        self.finished_at = time.monotonic()
        logger.info(
            f"Poll for {self.job_id} ended: {result.outcome.value} "
            f"after {self.state.attempts} attempts"
        )
        await _call(self._on_done, result, "done")

    async def _tick(self, deadline: float | None = None) -> PollResult | None:
        state = self.state
        state.attempts += 1
        scope = asyncio.timeout_at(deadline)
        try:
            async with scope:
                response = await self.probe()
        except Exception as e:
            if not self._alive:
                return None
            if scope.expired():
                logger.warning(f"Poll probe for {self.job_id} still running at the deadline")
                return PollResult(PollOutcome.TIMED_OUT, state)
            state.consecutive_errors += 1
            logger.warning(
                f"Poll probe for {self.job_id} failed "
                f"({state.consecutive_errors}/{self.options.max_consecutive_errors}): {e}"
            )
            if state.consecutive_errors >= self.options.max_consecutive_errors:
                return PollResult(PollOutcome.UNKNOWN, state, error=e)
            return None

        # Response arrived after cancel(): drop it
        if not self._alive:
            return None

        snapshot = _normalize(response)
        if snapshot is None:
            state.consecutive_empty_responses += 1
            logger.warning(
                f"Poll probe for {self.job_id} returned no data "
                f"({state.consecutive_empty_responses}/"
                f"{self.options.max_consecutive_empty_responses})"
            )
            if state.consecutive_empty_responses >= self.options.max_consecutive_empty_responses:
                return PollResult(PollOutcome.UNKNOWN, state)
            return None

        state.consecutive_errors = 0
        state.consecutive_empty_responses = 0
        state.progress = snapshot.progress
        state.status = snapshot.status
        await _call(self._on_progress, state, "progress")

        if snapshot.status == JobStatus.COMPLETED:
            return PollResult(PollOutcome.COMPLETED, state)
        if snapshot.status == JobStatus.ERROR:
            return PollResult(PollOutcome.FAILED, state)
        return None


class ProgressPoller:
    """Factory for polls."""

    def start(
        self,
        probe: Probe,
        options: PollOptions | None = None,
        job_id: str | None = None,
        on_progress: ProgressCallback | None = None,
        on_done: DoneCallback | None = None,
    ) -> PollHandle:
        """Start polling `probe`. Must be called from a running event loop."""
        handle = PollHandle(
            probe,
            options or PollOptions(),
            job_id=job_id,
            on_progress=on_progress,
            on_done=on_done,
        )
        return handle.start()


class PollerRegistry:
    """At most one live poll per job key.

    Finished polls stay readable through `get` for `retention_seconds`, then
    are evicted.
    """

    def __init__(
        self,
        poller: ProgressPoller | None = None,
        retention_seconds: float | None = None,
    ) -> None:
        self.poller = poller or ProgressPoller()
        self.retention_seconds = (
            retention_seconds
            if retention_seconds is not None
            else settings.poll_result_retention_seconds
        )
        self._handles: dict[str, PollHandle] = {}

    def _evict_finished(self) -> None:
        cutoff = time.monotonic() - self.retention_seconds
        stale = [
            key
            for key, handle in self._handles.items()
            if handle.finished_at is not None and handle.finished_at <= cutoff
        ]
        for key in stale:
            del self._handles[key]

    def watch(
        self,
        job_key: str,
        probe: Probe,
        options: PollOptions | None = None,
        on_progress: ProgressCallback | None = None,
        on_done: DoneCallback | None = None,
    ) -> PollHandle:
        """Start polling under `job_key`, cancelling any poll already running for it."""
        self._evict_finished()
        previous = self._handles.get(job_key)
        if previous is not None and previous.cancel():
            logger.info(f"Replaced running poll for {job_key}")

        handle = self.poller.start(
            probe, options, job_id=job_key, on_progress=on_progress, on_done=on_done
        )
        self._handles[job_key] = handle
        return handle

    def get(self, job_key: str) -> PollHandle | None:
        self._evict_finished()
        return self._handles.get(job_key)

    def cancel(self, job_key: str) -> bool:
        handle = self._handles.pop(job_key, None)
        return handle.cancel() if handle is not None else False

    def cancel_all(self) -> None:
        for job_key in list(self._handles):
            self.cancel(job_key)

    def active_keys(self) -> list[str]:
        self._evict_finished()
        return [key for key, handle in self._handles.items() if handle.active]

    def __len__(self) -> int:
        return len(self._handles)


# ==================== PROBES ====================


def background_job_probe(backend: BookingBackend, job_id: str) -> Probe:
    """Probe for a backend background job's progress endpoint."""

    async def probe() -> ProgressSnapshot | None:
        return await backend.get_background_job_progress(job_id)

    return probe


def settlement_probe(backend: BookingBackend, booking_id: str, kind: GateKind) -> Probe:
    """Probe that reports a gate's payment as job progress.

    settled -> completed, failed/cancelled -> error, anything else -> processing
    """

    async def probe() -> ProgressSnapshot:
        settlement = await backend.get_payment_settlement_status(booking_id, kind)
        outcome = settlement.outcome
        if outcome == SettlementStatus.SETTLED:
            return ProgressSnapshot(progress=100.0, status=JobStatus.COMPLETED)
        if outcome in SETTLEMENT_FINAL_FAILURES:
            return ProgressSnapshot(progress=0.0, status=JobStatus.ERROR)
        return ProgressSnapshot(progress=0.0, status=JobStatus.PROCESSING)

    return probe


poller_registry = PollerRegistry()
