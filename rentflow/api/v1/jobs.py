"""Background job progress endpoints."""

from fastapi import APIRouter

from rentflow.api.deps import Orchestrator
from rentflow.core.exceptions import NotFoundError
from rentflow.schemas.orchestration import JobStatusResponse, WatchRequest
from rentflow.services.gate_orchestrator import background_job_key
from rentflow.services.progress_poller import PollHandle, PollOptions

router = APIRouter()


def poll_options(request: WatchRequest | None) -> PollOptions | None:
    if request is None:
        return None
    return PollOptions(**request.model_dump(exclude_none=True))


def job_status(handle: PollHandle) -> JobStatusResponse:
    result = handle.result
    return JobStatusResponse(
        job_key=handle.job_id or "",
        active=handle.active,
        progress=handle.state.progress,
        status=handle.state.status,
        attempts=handle.state.attempts,
        outcome=result.outcome.value if result else None,
    )


@router.post("/{job_id}/watch", response_model=JobStatusResponse)
async def watch_job(
    job_id: str,
    orchestrator: Orchestrator,
    request: WatchRequest | None = None,
) -> JobStatusResponse:
    """Start following a backend job. Replaces any existing watch on it."""
    handle = orchestrator.watch_background_job(job_id, poll_options(request))
    return job_status(handle)


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, orchestrator: Orchestrator) -> JobStatusResponse:
    handle = orchestrator.registry.get(background_job_key(job_id))
    if handle is None:
        raise NotFoundError("Job watch", job_id)
    return job_status(handle)


@router.delete("/{job_id}", response_model=JobStatusResponse)
async def stop_job(job_id: str, orchestrator: Orchestrator) -> JobStatusResponse:
    """Stop following a job."""
    key = background_job_key(job_id)
    handle = orchestrator.registry.get(key)
    if handle is None:
        raise NotFoundError("Job watch", job_id)
    orchestrator.registry.cancel(key)
    return job_status(handle)
