"""Object storage for rendered variants."""

from __future__ import annotations

import os
from typing import Protocol
from urllib.parse import quote, urlparse, urlunparse

from google.auth.credentials import AnonymousCredentials
from google.cloud import storage
from starlette.concurrency import run_in_threadpool

from app.config import Settings


class ObjectStorage(Protocol):
  """Storage contract used by handlers that produce variant URLs."""

  async def put(self, path: str, data: bytes, content_type: str) -> str:
    """Store bytes at `path` and return a URL clients can fetch."""


class StorageClient:
  """Thin wrapper over GCS and emulator access for variant uploads."""

  def __init__(self, settings: Settings) -> None:
    self._bucket_name = settings.storage_bucket
    self._storage_host = settings.gcs_storage_host
    # Ensure emulator endpoint is visible to the SDK in local development.
    if self._storage_host:
      emulator_endpoint = _normalize_emulator_endpoint(self._storage_host)
      os.environ["GCS_STORAGE_EMULATOR_HOST"] = emulator_endpoint
      self._public_base = f"{emulator_endpoint}/storage/v1/b/{self._bucket_name}/o"
      self._client = storage.Client(project=settings.gcp_project_id or "local-dev", credentials=AnonymousCredentials(), client_options={"api_endpoint": emulator_endpoint})
    else:
      self._public_base = f"https://storage.googleapis.com/{self._bucket_name}"
      self._client = storage.Client(project=settings.gcp_project_id)

  @property
  def bucket_name(self) -> str:
    return self._bucket_name

  async def ensure_bucket(self) -> None:
    """Create the bucket when missing in emulator flows."""
    # Keep production startup side-effect free; only auto-create in emulator mode.
    if not self._storage_host:
      return
    bucket = self._client.bucket(self._bucket_name)

    def _create_if_missing() -> None:
      if not bucket.exists(client=self._client):
        self._client.create_bucket(bucket)

    await run_in_threadpool(_create_if_missing)

  async def put(self, path: str, data: bytes, content_type: str) -> str:
    """Upload bytes and return the object's URL."""
    bucket = self._client.bucket(self._bucket_name)
    blob = bucket.blob(path)
    blob.cache_control = "public, max-age=3600"
    await run_in_threadpool(blob.upload_from_string, data, content_type)
    if self._storage_host:
      return f"{self._public_base}/{quote(path, safe='')}?alt=media"
    return f"{self._public_base}/{path}"


def _normalize_emulator_endpoint(raw: str) -> str:
  """Ensure the emulator endpoint has a scheme and no trailing slash."""
  candidate = raw if "://" in raw else f"http://{raw}"
  parsed = urlparse(candidate)
  return urlunparse((parsed.scheme, parsed.netloc, "", "", "", "")).rstrip("/")


def build_storage_client(settings: Settings) -> StorageClient:
  """Create a storage client from settings."""
  return StorageClient(settings)
