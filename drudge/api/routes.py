from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from drudge.api.dependencies import get_engine, get_settings, require_internal_token
from drudge.api.schemas import (
    EnqueueRequest,
    EnqueueResponse,
    HealthResponse,
    JobResponse,
    QueueCounts,
    QueueStateResponse,
    RetryResponse,
    TriggerHealth,
)
from drudge.config import Settings
from drudge.core.engine import Engine


router = APIRouter()


def _parse_job_id(job_id: str) -> UUID:
    try:
        return UUID(job_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post(
    "/queue/{queue}",
    status_code=202,
    response_model=EnqueueResponse,
    dependencies=[Depends(require_internal_token)],
)
def enqueue_job(
    queue: str, body: EnqueueRequest, engine: Engine = Depends(get_engine)
) -> EnqueueResponse:
    options = body.options
    job = engine.enqueue(
        queue,
        body.data,
        priority=options.priority,
        delay=options.delay,
        max_attempts=options.attempts,
        backoff=options.backoff_value(),
    )
    return EnqueueResponse(jobId=str(job.id), queue=queue)


@router.get("/job/{queue}/{job_id}", response_model=JobResponse)
def get_job(
    queue: str, job_id: str, engine: Engine = Depends(get_engine)
) -> JobResponse:
    job = engine.broker.get(queue, _parse_job_id(job_id))
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.from_job(job)


@router.delete(
    "/job/{queue}/{job_id}",
    status_code=204,
    dependencies=[Depends(require_internal_token)],
)
def cancel_job(
    queue: str, job_id: str, engine: Engine = Depends(get_engine)
) -> Response:
    """Remove a job that hasn't been claimed yet."""
    parsed_id = _parse_job_id(job_id)
    if engine.broker.cancel(queue, parsed_id):
        return Response(status_code=204)

    job = engine.broker.get(queue, parsed_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    raise HTTPException(
        status_code=409, detail=f"Job is {job.state} and can't be cancelled"
    )


@router.get("/stats", response_model=dict[str, QueueCounts])
def get_stats(engine: Engine = Depends(get_engine)) -> dict[str, QueueCounts]:
    return {
        name: QueueCounts.from_stats(stats)
        for name, stats in engine.broker.stats().items()
    }


@router.post(
    "/retry/{queue}",
    response_model=RetryResponse,
    dependencies=[Depends(require_internal_token)],
)
def retry_failed(queue: str, engine: Engine = Depends(get_engine)) -> RetryResponse:
    return RetryResponse(retriedCount=engine.broker.retry_all(queue))


@router.delete(
    "/clean/{queue}",
    status_code=204,
    dependencies=[Depends(require_internal_token)],
)
def clean_queue(
    queue: str,
    grace: int | None = Query(None, ge=0, description="Minimum age in milliseconds"),
    engine: Engine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
) -> Response:
    engine.broker.clean(queue, grace if grace is not None else settings.clean_grace)
    return Response(status_code=204)


@router.post(
    "/pause/{queue}",
    response_model=QueueStateResponse,
    dependencies=[Depends(require_internal_token)],
)
def pause_queue(queue: str, engine: Engine = Depends(get_engine)) -> QueueStateResponse:
    config = engine.pause(queue)
    return QueueStateResponse(queue=queue, paused=config.paused)


@router.post(
    "/resume/{queue}",
    response_model=QueueStateResponse,
    dependencies=[Depends(require_internal_token)],
)
def resume_queue(queue: str, engine: Engine = Depends(get_engine)) -> QueueStateResponse:
    config = engine.resume(queue)
    return QueueStateResponse(queue=queue, paused=config.paused)


@router.get("/health", response_model=HealthResponse)
def health(engine: Engine = Depends(get_engine)) -> HealthResponse:
    report = engine.health()
    return HealthResponse(
        status=report["status"],
        uptime=report["uptime"],
        queues={
            name: QueueCounts.from_stats(stats)
            for name, stats in report["queues"].items()
        },
        triggers={
            name: TriggerHealth.from_state(state)
            for name, state in report["triggers"].items()
        },
    )
