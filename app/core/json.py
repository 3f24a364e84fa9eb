"""Custom JSON handling."""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi.responses import JSONResponse


class EngineJSONEncoder(json.JSONEncoder):
  """JSON encoder that handles Decimal and datetime values from the database."""

  def default(self, obj: Any) -> Any:
    if isinstance(obj, Decimal):
      return int(obj) if obj % 1 == 0 else float(obj)
    if isinstance(obj, datetime):
      return obj.isoformat()
    return super().default(obj)


class EngineJSONResponse(JSONResponse):
  """JSONResponse that uses EngineJSONEncoder."""

  def render(self, content: Any) -> bytes:
    return json.dumps(content, ensure_ascii=False, allow_nan=False, indent=None, separators=(",", ":"), cls=EngineJSONEncoder).encode("utf-8")


def canonical_json(payload: Any) -> bytes:
  """Serialize a payload the same way for signing and sending."""
  return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True, cls=EngineJSONEncoder).encode("utf-8")
