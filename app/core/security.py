"""Signing and verification for callbacks and internal task endpoints."""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime

from fastapi import HTTPException, status

from app.core.errors import InvalidSignatureError, StaleTimestampError
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300
# Timestamps above this are milliseconds, not seconds.
_MILLISECONDS_THRESHOLD = 10_000_000_000


def sign_payload(secret: str, timestamp: str, raw_body: bytes) -> str:
  """Return the hex HMAC-SHA256 of `timestamp || raw_body`."""
  message = timestamp.encode("utf-8") + raw_body
  return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signed_headers(secret: str, raw_body: bytes, *, now: datetime | None = None) -> dict[str, str]:
  """Build the headers an outbound signed request carries."""
  timestamp = str(int((now or utcnow()).timestamp()))
  return {"content-type": "application/json", "x-timestamp": timestamp, "x-signature": sign_payload(secret, timestamp, raw_body)}


def _parse_timestamp(raw: str | None) -> float:
  if raw is None or raw.strip() == "":
    raise StaleTimestampError("Missing callback timestamp.")
  try:
    value = float(raw.strip())
  except ValueError as exc:
    raise StaleTimestampError("Callback timestamp is not a number.") from exc
  if value > _MILLISECONDS_THRESHOLD:
    value = value / 1000.0
  return value


def verify_signature(secret: str, timestamp: str | None, raw_body: bytes, signature: str | None, *, now: datetime | None = None, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS) -> None:
  """
  Authenticate a signed inbound request.

  The timestamp is checked first so a replayed body cannot be used to probe the
  signature. Both checks raise instead of returning a flag.
  """
  sent_at = _parse_timestamp(timestamp)
  current = (now or utcnow()).timestamp()
  skew = current - sent_at
  if abs(skew) > tolerance_seconds:
    raise StaleTimestampError(f"Callback timestamp is {int(skew)}s away from server time (tolerance {tolerance_seconds}s).")

  if not signature:
    raise InvalidSignatureError("Missing callback signature.")
  expected = sign_payload(secret, str(timestamp).strip(), raw_body)
  provided = signature.strip()
  # Some senders prefix the digest with the algorithm name.
  if provided.startswith("sha256="):
    provided = provided[len("sha256=") :]
  if not hmac.compare_digest(expected, provided.lower()):
    raise InvalidSignatureError("Callback signature does not match.")


def require_task_secret(expected_secret: str | None, *, shared_secret: str | None, authorization: str | None) -> None:
  """Guard internal endpoints with a shared secret header or bearer token."""
  # Secure-by-default: internal endpoints stay closed until a secret is configured.
  if not expected_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  shared_secret_valid = secrets.compare_digest(shared_secret or "", expected_secret)
  bearer_valid = secrets.compare_digest(authorization or "", f"Bearer {expected_secret}")
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized access attempt to an internal endpoint")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")
