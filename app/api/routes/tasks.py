from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, status

from app.api.models import OutboxProcessResponse, OutboxSummaryResponse
from app.core.security import require_task_secret
from app.services.runtime import EngineRuntime, get_runtime
from app.utils.clock import utcnow

router = APIRouter()
logger = logging.getLogger(__name__)


def require_internal_auth(runtime: Annotated[EngineRuntime, Depends(get_runtime)], authorization: str | None = Header(default=None), x_enhance_task_secret: str | None = Header(default=None)) -> None:
  """Guard operator endpoints with the shared task secret."""
  require_task_secret(runtime.settings.task_secret, shared_secret=x_enhance_task_secret, authorization=authorization)


@router.post("/outbox/process", response_model=OutboxProcessResponse, status_code=status.HTTP_200_OK, dependencies=[Depends(require_internal_auth)])
async def process_outbox(runtime: Annotated[EngineRuntime, Depends(get_runtime)]) -> OutboxProcessResponse:
  """Run one dispatcher cycle on demand, e.g. from a scheduler when the loop is disabled."""
  cycle = await runtime.dispatcher.run_once()
  logger.info("Manual outbox cycle claimed=%d completed=%d", cycle.claimed, cycle.completed)
  return OutboxProcessResponse(recovered=cycle.recovered, claimed=cycle.claimed, completed=cycle.completed, retried=cycle.retried, failed=cycle.failed, abandoned=cycle.abandoned)


@router.get("/outbox/summary", response_model=OutboxSummaryResponse, dependencies=[Depends(require_internal_auth)])
async def outbox_summary(runtime: Annotated[EngineRuntime, Depends(get_runtime)]) -> OutboxSummaryResponse:
  """Counts of ready, scheduled, in-flight, stuck and finished outbox rows."""
  counts = await runtime.outbox_repo.status_counts(now=utcnow(), stale_after=runtime.dispatcher.stale_after)
  return OutboxSummaryResponse.from_counts(counts)


@router.get("/metrics", dependencies=[Depends(require_internal_auth)])
async def metrics_snapshot(runtime: Annotated[EngineRuntime, Depends(get_runtime)]) -> dict[str, Any]:
  """Current values of every engine metric."""
  await runtime.dispatcher.refresh_active_jobs()
  return runtime.metrics.snapshot()
