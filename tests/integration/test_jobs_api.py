"""HTTP surface of the engine against a real (SQLite) store."""

from __future__ import annotations

import json

import pytest

from app.core.security import sign_payload
from app.utils.clock import utcnow

TASK_HEADERS = {"x-enhance-task-secret": "task-test-secret"}
CALLBACK_SECRET = "callback-test-secret"


def _callback_headers(raw_body: bytes, *, nonce: str | None = None) -> dict[str, str]:
  timestamp = str(int(utcnow().timestamp()))
  headers = {"content-type": "application/json", "x-timestamp": timestamp, "x-n8n-signature": sign_payload(CALLBACK_SECRET, timestamp, raw_body)}
  if nonce:
    headers["x-nonce"] = nonce
  return headers


async def _create(async_client, **overrides) -> dict:
  body = {"provider": "mock", "imageUrl": "https://cdn.example.test/in.png", "options": {"variants": 2}}
  body.update(overrides)
  response = await async_client.post("/v1/jobs", json=body)
  assert response.status_code in (200, 201), response.text
  return response.json()


@pytest.mark.anyio
async def test_create_process_and_read_back(async_client) -> None:
  created = await _create(async_client)
  assert created["status"] == "queued"
  assert created["progress_percent"] == 0

  processed = await async_client.post("/internal/outbox/process", headers=TASK_HEADERS)
  assert processed.status_code == 200
  assert processed.json()["completed"] == 1

  response = await async_client.get(f"/v1/jobs/{created['job_id']}")
  job = response.json()
  assert response.headers["x-request-id"]
  assert job["status"] == "completed"
  assert job["cost_micros"] == 50_000
  assert [variant["rank"] for variant in job["variants"]] == [0, 1]

  events = (await async_client.get(f"/v1/jobs/{created['job_id']}/events")).json()
  assert [(event["event_type"], event["status"]) for event in events] == [("submit_enhancement", "completed")]


@pytest.mark.anyio
async def test_idempotency_key_returns_the_same_job(async_client) -> None:
  first = await async_client.post("/v1/jobs", json={"provider": "mock", "imageUrl": "https://cdn.example.test/in.png", "idempotencyKey": "abc-123"})
  second = await async_client.post("/v1/jobs", json={"provider": "mock", "imageUrl": "https://cdn.example.test/in.png", "idempotencyKey": "abc-123"})

  assert first.status_code == 201
  assert second.status_code == 200
  assert second.json()["job_id"] == first.json()["job_id"]


@pytest.mark.anyio
async def test_unknown_provider_and_bad_options_are_unprocessable(async_client) -> None:
  unknown = await async_client.post("/v1/jobs", json={"provider": "dall-e", "imageUrl": "https://cdn.example.test/in.png"})
  assert unknown.status_code == 422
  assert unknown.json()["code"] == "UNKNOWN_PROVIDER"

  bad_options = await async_client.post("/v1/jobs", json={"provider": "mock", "imageUrl": "https://cdn.example.test/in.png", "options": {"variants": 42}})
  assert bad_options.status_code == 422
  assert bad_options.json()["code"] == "PROVIDER_REJECTED"

  missing_image = await async_client.post("/v1/jobs", json={"provider": "mock"})
  assert missing_image.status_code == 422


@pytest.mark.anyio
async def test_unknown_job_is_404(async_client) -> None:
  response = await async_client.get("/v1/jobs/does-not-exist")
  assert response.status_code == 404
  assert response.json()["code"] == "JOB_NOT_FOUND"


@pytest.mark.anyio
async def test_cancel_then_cancel_again_conflicts(async_client) -> None:
  created = await _create(async_client)

  canceled = await async_client.post(f"/v1/jobs/{created['job_id']}/cancel")
  assert canceled.status_code == 200
  assert canceled.json()["status"] == "canceled"

  again = await async_client.post(f"/v1/jobs/{created['job_id']}/cancel")
  assert again.status_code == 409
  assert again.json()["code"] == "TERMINAL_STATE"

  # The queued submission becomes a no-op once the job is canceled.
  await async_client.post("/internal/outbox/process", headers=TASK_HEADERS)
  job = (await async_client.get(f"/v1/jobs/{created['job_id']}")).json()
  assert job["status"] == "canceled"
  assert job["variants"] == []


@pytest.mark.anyio
async def test_signed_callbacks_drive_the_job(async_client) -> None:
  created = await _create(async_client)
  job_id = created["job_id"]

  for body in ({"status": "rendering", "progress": 50}, {"status": "postprocessing"}, {"status": "uploading"}):
    raw_body = json.dumps(body).encode()
    response = await async_client.post(f"/v1/jobs/{job_id}/callback", content=raw_body, headers=_callback_headers(raw_body))
    assert response.status_code == 200, response.text
    assert response.json()["status"] == body["status"]

  raw_body = json.dumps({"status": "completed", "variants": [{"url": "https://x/1.png", "rank": 1}, {"url": "https://x/0.png", "rank": 0}], "costMicros": 1234}).encode()
  response = await async_client.post(f"/v1/jobs/{job_id}/callback", content=raw_body, headers=_callback_headers(raw_body, nonce="final"))
  assert response.status_code == 200

  job = (await async_client.get(f"/v1/jobs/{job_id}")).json()
  assert job["status"] == "completed"
  assert job["cost_micros"] == 1234
  assert [variant["output_url"] for variant in job["variants"]] == ["https://x/0.png", "https://x/1.png"]

  # Any further callback hits a finished job.
  late = await async_client.post(f"/v1/jobs/{job_id}/callback", content=raw_body, headers=_callback_headers(raw_body))
  assert late.status_code == 409


@pytest.mark.anyio
async def test_callback_auth_failures_are_401(async_client) -> None:
  created = await _create(async_client)
  raw_body = b'{"status": "rendering"}'

  unsigned = await async_client.post(f"/v1/jobs/{created['job_id']}/callback", content=raw_body, headers={"x-timestamp": str(int(utcnow().timestamp()))})
  assert unsigned.status_code == 401
  assert unsigned.json()["code"] == "INVALID_SIGNATURE"

  stale_timestamp = str(int(utcnow().timestamp()) - 600)
  stale = await async_client.post(f"/v1/jobs/{created['job_id']}/callback", content=raw_body, headers={"x-timestamp": stale_timestamp, "x-signature": sign_payload(CALLBACK_SECRET, stale_timestamp, raw_body)})
  assert stale.status_code == 401
  assert stale.json()["code"] == "STALE_TIMESTAMP"

  job = (await async_client.get(f"/v1/jobs/{created['job_id']}")).json()
  assert job["status"] == "queued"


@pytest.mark.anyio
async def test_illegal_callback_transition_conflicts(async_client) -> None:
  created = await _create(async_client)
  raw_body = json.dumps({"status": "completed", "urls": ["https://x/0.png"]}).encode()

  response = await async_client.post(f"/v1/jobs/{created['job_id']}/callback", content=raw_body, headers=_callback_headers(raw_body))

  assert response.status_code == 409
  assert response.json()["code"] == "INVALID_TRANSITION"


@pytest.mark.anyio
async def test_internal_endpoints_require_the_task_secret(async_client) -> None:
  assert (await async_client.post("/internal/outbox/process")).status_code == 403
  assert (await async_client.get("/internal/metrics", headers={"authorization": "Bearer wrong"})).status_code == 403

  await _create(async_client)
  summary = await async_client.get("/internal/outbox/summary", headers={"authorization": "Bearer task-test-secret"})
  assert summary.status_code == 200
  assert summary.json()["ready"] == 1

  metrics = (await async_client.get("/internal/metrics", headers=TASK_HEADERS)).json()
  assert metrics["jobs_created_total"]["series"][0]["value"] == 1
  assert {"labels": {"status": "queued"}, "value": 1} in metrics["active_jobs"]["series"]


@pytest.mark.anyio
async def test_health(async_client) -> None:
  response = await async_client.get("/health")
  assert response.json() == {"status": "ok", "version": "0.1.0"}
