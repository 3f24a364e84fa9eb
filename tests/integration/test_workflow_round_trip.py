"""Delegated jobs: hand-off to a workflow runner, then callbacks or cancellation."""

from __future__ import annotations

import json

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from app.ai.providers import WorkflowProvider
from app.core.security import sign_payload
from app.services.runtime import build_runtime
from app.utils.clock import utcnow

WEBHOOK = "https://workflows.example.test/webhook/enhance"
TASK_HEADERS = {"x-enhance-task-secret": "task-test-secret"}


class FakeRunner:
  """Stands in for the external workflow runner."""

  def __init__(self) -> None:
    self.requests: list[dict] = []

  def __call__(self, request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    self.requests.append(body)
    if body["action"] == "enhance":
      return httpx.Response(202, json={"executionId": f"exec-{body['jobId'][:8]}"})
    return httpx.Response(200, json={"ok": True})


@pytest.fixture
def runner() -> FakeRunner:
  return FakeRunner()


@pytest.fixture
async def workflow_client(settings, session_factory, metrics, runner):
  from app.main import app

  provider = WorkflowProvider(WEBHOOK, callback_base_url=settings.app_url, secret=settings.callback_secret, transport=httpx.MockTransport(runner))
  app.state.runtime = build_runtime(settings, session_factory=session_factory, providers={"workflow": provider}, metrics=metrics)
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.state.runtime = None


def _signed(body: dict) -> tuple[bytes, dict[str, str]]:
  raw_body = json.dumps(body).encode()
  timestamp = str(int(utcnow().timestamp()))
  return raw_body, {"content-type": "application/json", "x-timestamp": timestamp, "x-signature": sign_payload("callback-test-secret", timestamp, raw_body)}


async def _submit(client: AsyncClient) -> str:
  created = await client.post("/v1/jobs", json={"provider": "workflow", "imageUrl": "/uploads/portrait.png", "options": {"preset": "portrait"}})
  assert created.status_code == 201, created.text
  job_id = created.json()["job_id"]
  processed = await client.post("/internal/outbox/process", headers=TASK_HEADERS)
  assert processed.json()["completed"] == 1
  return job_id


@pytest.mark.anyio
async def test_hand_off_then_callbacks_complete_the_job(workflow_client, runner) -> None:
  job_id = await _submit(workflow_client)

  job = (await workflow_client.get(f"/v1/jobs/{job_id}")).json()
  assert job["status"] == "rendering"
  assert job["provider_job_id"] == f"exec-{job_id[:8]}"
  [hand_off] = runner.requests
  assert hand_off["imageUrl"] == "https://app.example.test/uploads/portrait.png"
  assert hand_off["callbackUrl"] == f"https://app.example.test/v1/jobs/{job_id}/callback"

  # A redelivered submission must not hand the job off twice.
  assert (await workflow_client.post("/internal/outbox/process", headers=TASK_HEADERS)).json()["claimed"] == 0

  for body in ({"status": "rendering", "progress": 80}, {"status": "postprocessing"}, {"status": "uploading"}, {"status": "completed", "enhancedImageUrl": "https://cdn.example.test/out.png", "costMicros": 40_000}):
    raw_body, headers = _signed(body)
    response = await workflow_client.post(f"/v1/jobs/{job_id}/callback", content=raw_body, headers=headers)
    assert response.status_code == 200, response.text

  job = (await workflow_client.get(f"/v1/jobs/{job_id}")).json()
  assert job["status"] == "completed"
  assert job["progress_percent"] == 100
  assert [variant["output_url"] for variant in job["variants"]] == ["https://cdn.example.test/out.png"]


@pytest.mark.anyio
async def test_cancel_sends_a_hint_to_the_runner(workflow_client, runner) -> None:
  job_id = await _submit(workflow_client)

  canceled = await workflow_client.post(f"/v1/jobs/{job_id}/cancel")
  assert canceled.json()["status"] == "canceled"
  await workflow_client.post("/internal/outbox/process", headers=TASK_HEADERS)

  assert runner.requests[-1] == {"action": "cancel", "providerJobId": f"exec-{job_id[:8]}"}
  events = (await workflow_client.get(f"/v1/jobs/{job_id}/events")).json()
  assert [(event["event_type"], event["status"]) for event in events] == [("submit_enhancement", "completed"), ("cancel_provider_job", "completed")]

  # The runner's late report finds a finished job.
  raw_body, headers = _signed({"status": "postprocessing"})
  late = await workflow_client.post(f"/v1/jobs/{job_id}/callback", content=raw_body, headers=headers)
  assert late.status_code == 409
