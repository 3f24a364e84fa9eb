import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request

from app.api.models import CallbackResponse
from app.services.callbacks import ingest_callback
from app.services.runtime import EngineRuntime, get_runtime

router = APIRouter()
logger = logging.getLogger("app.api.routes.callbacks")


@router.post("/{job_id}/callback", response_model=CallbackResponse)
async def receive_callback(
  job_id: str,
  request: Request,
  runtime: Annotated[EngineRuntime, Depends(get_runtime)],
  x_timestamp: str | None = Header(default=None),
  x_signature: str | None = Header(default=None),
  x_n8n_signature: str | None = Header(default=None),
  x_nonce: str | None = Header(default=None),
) -> CallbackResponse:
  """Apply a signed progress or result callback from a provider."""
  # The signature covers the exact bytes sent, so read the body before any parsing.
  raw_body = await request.body()
  outcome = await ingest_callback(job_id, raw_body, runtime, timestamp=x_timestamp, signature=x_signature or x_n8n_signature, nonce=x_nonce)
  return CallbackResponse(job_id=outcome.job_id, status=outcome.status, changed=outcome.changed)
