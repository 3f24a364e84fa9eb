import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from app.api.models import CancelResponse, JobCreateRequest, JobResponse, OutboxEventResponse
from app.services import jobs as job_service
from app.services.runtime import EngineRuntime, get_runtime

router = APIRouter()
logger = logging.getLogger("app.api.routes.jobs")


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(request: JobCreateRequest, response: Response, runtime: Annotated[EngineRuntime, Depends(get_runtime)]) -> JobResponse:
  """Create an enhancement job; a repeated idempotency key returns the original job."""
  job, created = await job_service.create_job(request, runtime)
  if not created:
    response.status_code = status.HTTP_200_OK
  return JobResponse.from_record(job)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, runtime: Annotated[EngineRuntime, Depends(get_runtime)]) -> JobResponse:
  """Fetch the status, progress and variants of a job."""
  return JobResponse.from_record(await job_service.get_job(job_id, runtime))


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(job_id: str, runtime: Annotated[EngineRuntime, Depends(get_runtime)]) -> CancelResponse:
  """Cancel a job that has not finished yet."""
  job = await job_service.cancel_job(job_id, runtime)
  return CancelResponse(job_id=job.job_id, status=job.status, canceled_at=job.canceled_at)


@router.get("/{job_id}/events", response_model=list[OutboxEventResponse])
async def list_job_events(job_id: str, runtime: Annotated[EngineRuntime, Depends(get_runtime)]) -> list[OutboxEventResponse]:
  """List the outbox events recorded for a job, oldest first."""
  return [OutboxEventResponse.from_record(event) for event in await job_service.list_job_events(job_id, runtime)]
