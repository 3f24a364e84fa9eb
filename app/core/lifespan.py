import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from app.config import Settings
from app.core.database import create_schema, get_db_engine, get_session_factory
from app.core.logging import _initialize_logging
from app.services.runtime import EngineRuntime, build_runtime
from app.services.storage_client import StorageClient, build_storage_client

DISPATCHER_SHUTDOWN_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging, the engine runtime and the outbox dispatcher loop."""
  from app.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")

  try:
    _initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
  except Exception:  # noqa: BLE001
    logger.warning("Initial logging setup failed; continuing with default handlers.", exc_info=True)

  engine = get_db_engine()
  if engine is None:
    logger.warning("ENHANCE_PG_DSN is not set; job routes stay unavailable.")
    yield
    return

  if settings.auto_create_schema:
    await create_schema(engine)
    logger.info("Database schema ensured.")

  storage = await _build_storage(settings, logger=logger)
  runtime = build_runtime(settings, session_factory=get_session_factory(), storage=storage)
  app.state.runtime = runtime
  logger.info("Engine runtime ready dsn=%s providers=%s", _redact_dsn(settings.pg_dsn), runtime.gateway.names())

  stop_event = asyncio.Event()
  dispatcher_task = _start_dispatcher(runtime, stop_event, logger=logger) if settings.dispatcher_enabled else None
  try:
    yield
  finally:
    stop_event.set()
    if dispatcher_task is not None:
      # Let the in-flight cycle finish; claimed rows left behind are recovered by the stale sweep.
      try:
        await asyncio.wait_for(dispatcher_task, timeout=DISPATCHER_SHUTDOWN_SECONDS)
      except TimeoutError:
        logger.warning("Outbox dispatcher did not stop within %.0fs; cancelling.", DISPATCHER_SHUTDOWN_SECONDS)
        dispatcher_task.cancel()
    app.state.runtime = None
    await engine.dispose()


def _start_dispatcher(runtime: EngineRuntime, stop_event: asyncio.Event, *, logger: logging.Logger) -> asyncio.Task[None]:
  task = asyncio.create_task(runtime.dispatcher.run_forever(stop_event), name="outbox-dispatcher")

  def _log_exit(done: asyncio.Task[None]) -> None:
    if done.cancelled():
      return
    exc = done.exception()
    if exc is not None:
      logger.error("Outbox dispatcher exited unexpectedly: %s", exc, exc_info=exc)

  task.add_done_callback(_log_exit)
  return task


async def _build_storage(settings: Settings, *, logger: logging.Logger) -> StorageClient | None:
  """Create the variant bucket client; inline variants fail their jobs when this is missing."""
  try:
    storage_client = build_storage_client(settings)
    await storage_client.ensure_bucket()
    logger.info("Variant bucket ensured: %s", storage_client.bucket_name)
    return storage_client
  except Exception as exc:  # noqa: BLE001
    logger.warning("Object storage unavailable at startup: %s", exc)
    return None


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"
