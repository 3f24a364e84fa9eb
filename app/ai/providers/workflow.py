"""Provider that hands jobs to an external workflow runner over a webhook.

The runner acknowledges quickly and reports progress and completion later through
the signed callback endpoint, so a successful submission is a pending result.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

import httpx
from pydantic import Field

from app.ai.providers.base import ProgressCallback, Provider, ProviderOptions, ProviderPayload, ProviderResult
from app.core.errors import ProviderRejectedError, ProviderTimeoutError, ProviderUnavailableError
from app.core.json import canonical_json
from app.core.security import signed_headers

logger = logging.getLogger(__name__)


class WorkflowOptions(ProviderOptions):
  provider: Literal["workflow"] = "workflow"
  workflow: str | None = None
  preset: str | None = None
  strength: float = Field(default=0.5, ge=0.0, le=1.0)
  variants: int = Field(default=1, ge=1, le=8)


def _raise_for_status(response: httpx.Response, *, action: str) -> None:
  """Map the runner's HTTP status onto the provider error taxonomy."""
  if response.is_success:
    return
  detail = response.text[:300]
  if response.status_code == 429 or response.status_code >= 500:
    raise ProviderUnavailableError(f"Workflow {action} failed with HTTP {response.status_code}: {detail}")
  raise ProviderRejectedError(f"Workflow {action} rejected with HTTP {response.status_code}: {detail}")


class WorkflowProvider(Provider):
  """Submit enhancements to an n8n-style workflow webhook."""

  name = "workflow"
  options_model = WorkflowOptions

  def __init__(self, webhook_url: str, *, callback_base_url: str | None, secret: str | None, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._webhook_url = webhook_url
    self._callback_base_url = callback_base_url.rstrip("/") if callback_base_url else None
    self._secret = secret
    self._transport = transport

  def callback_url(self, job_id: str) -> str | None:
    if not self._callback_base_url:
      return None
    return f"{self._callback_base_url}/v1/jobs/{job_id}/callback"

  async def submit(self, payload: ProviderPayload, *, on_progress: ProgressCallback | None = None, timeout: float) -> ProviderResult:
    body: dict[str, Any] = {
      "action": "enhance",
      "jobId": payload.job_id,
      "imageUrl": payload.image_url,
      "masks": payload.masks,
      "options": payload.options.model_dump(exclude={"provider"}),
      "calibration": payload.calibration,
      "model": payload.model,
      "callbackUrl": self.callback_url(payload.job_id),
    }
    response_body = await self._post(body, timeout=timeout, action="submit")
    provider_job_id = response_body.get("executionId") or response_body.get("jobRef") or response_body.get("id")
    # Runners report progress through callbacks; mark the hand-off on the bar.
    if on_progress is not None:
      await on_progress(0)
    logger.info("Workflow accepted job %s provider_job_id=%s", payload.job_id, provider_job_id)
    return ProviderResult(variants=[], cost_micros=0, provider_job_id=str(provider_job_id) if provider_job_id else None, pending=True)

  async def cancel(self, provider_job_id: str) -> None:
    await self._post({"action": "cancel", "providerJobId": provider_job_id}, timeout=10.0, action="cancel")

  async def _post(self, body: dict[str, Any], *, timeout: float, action: str) -> dict[str, Any]:
    raw_body = canonical_json(body)
    headers = signed_headers(self._secret, raw_body) if self._secret else {"content-type": "application/json"}
    try:
      async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
        response = await client.post(self._webhook_url, content=raw_body, headers=headers)
    except httpx.TimeoutException as exc:
      raise ProviderTimeoutError(f"Workflow {action} timed out after {timeout}s") from exc
    except httpx.TransportError as exc:
      raise ProviderUnavailableError(f"Workflow {action} transport error: {exc}") from exc
    _raise_for_status(response, action=action)
    if not response.content:
      return {}
    try:
      parsed = response.json()
    except ValueError:
      return {}
    return parsed if isinstance(parsed, dict) else {}
