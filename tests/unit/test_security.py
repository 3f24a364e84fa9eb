"""Signed callback verification and internal endpoint guards."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import HTTPException

from app.core.errors import InvalidSignatureError, StaleTimestampError
from app.core.security import require_task_secret, sign_payload, signed_headers, verify_signature
from app.utils.clock import utcnow

SECRET = "shh"
BODY = b'{"status":"rendering"}'


def _timestamp(offset_seconds: float = 0) -> str:
  return str(int((utcnow() + timedelta(seconds=offset_seconds)).timestamp()))


def test_signature_covers_timestamp_and_body() -> None:
  timestamp = _timestamp()
  signature = sign_payload(SECRET, timestamp, BODY)

  verify_signature(SECRET, timestamp, BODY, signature)
  with pytest.raises(InvalidSignatureError):
    verify_signature(SECRET, timestamp, BODY + b" ", signature)
  with pytest.raises(InvalidSignatureError):
    verify_signature("other", timestamp, BODY, signature)


def test_algorithm_prefix_and_millisecond_timestamps_are_accepted() -> None:
  now = utcnow()
  millis = str(int(now.timestamp() * 1000))
  signature = sign_payload(SECRET, millis, BODY)

  verify_signature(SECRET, millis, BODY, f"sha256={signature}", now=now)


def test_ten_minute_old_timestamp_is_stale_even_with_a_valid_signature() -> None:
  timestamp = _timestamp(-600)
  with pytest.raises(StaleTimestampError):
    verify_signature(SECRET, timestamp, BODY, sign_payload(SECRET, timestamp, BODY))


def test_future_timestamps_beyond_tolerance_are_stale() -> None:
  timestamp = _timestamp(600)
  with pytest.raises(StaleTimestampError):
    verify_signature(SECRET, timestamp, BODY, sign_payload(SECRET, timestamp, BODY))


def test_custom_tolerance() -> None:
  timestamp = _timestamp(-90)
  signature = sign_payload(SECRET, timestamp, BODY)
  verify_signature(SECRET, timestamp, BODY, signature, tolerance_seconds=120)
  with pytest.raises(StaleTimestampError):
    verify_signature(SECRET, timestamp, BODY, signature, tolerance_seconds=60)


@pytest.mark.parametrize("timestamp", [None, "", "yesterday"])
def test_missing_or_garbled_timestamp_is_stale(timestamp) -> None:
  with pytest.raises(StaleTimestampError):
    verify_signature(SECRET, timestamp, BODY, "abc")


def test_missing_signature_is_invalid() -> None:
  with pytest.raises(InvalidSignatureError):
    verify_signature(SECRET, _timestamp(), BODY, None)


def test_signed_headers_verify() -> None:
  headers = signed_headers(SECRET, BODY)
  verify_signature(SECRET, headers["x-timestamp"], BODY, headers["x-signature"])


def test_task_secret_accepts_header_or_bearer() -> None:
  require_task_secret("s3", shared_secret="s3", authorization=None)
  require_task_secret("s3", shared_secret=None, authorization="Bearer s3")
  with pytest.raises(HTTPException) as excinfo:
    require_task_secret("s3", shared_secret="nope", authorization="Bearer nope")
  assert excinfo.value.status_code == 403
  # Unconfigured secrets keep the endpoints closed.
  with pytest.raises(HTTPException):
    require_task_secret(None, shared_secret="", authorization="")
