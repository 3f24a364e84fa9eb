from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import get_database_settings


class Base(DeclarativeBase):
  pass


engine = None
SessionLocal = None


def _database_url() -> str | None:
  """Build the SQLAlchemy database URL while keeping settings evaluation minimal."""
  settings = get_database_settings()
  database_url = settings.pg_dsn
  if database_url and database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
  # Local runs may point at a plain sqlite file.
  if database_url and database_url.startswith("sqlite:///"):
    database_url = database_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)

  return database_url


def configure_sqlite(db_engine: AsyncEngine) -> AsyncEngine:
  """Make SQLite serialize writers so guarded updates behave like row locks."""

  @event.listens_for(db_engine.sync_engine, "connect")
  def _set_sqlite_pragma(dbapi_conn: Any, _connection_record: Any) -> None:
    # Let SQLAlchemy own transaction boundaries instead of the driver.
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=10000")
    cursor.close()

  @event.listens_for(db_engine.sync_engine, "begin")
  def _begin_immediate(conn: Any) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")

  return db_engine


def get_db_engine() -> AsyncEngine | None:
  global engine
  settings = get_database_settings()
  database_url = _database_url()
  if engine is None and database_url:
    connect_args: dict[str, object] = {}
    if database_url.startswith("postgresql+asyncpg://"):
      connect_args["timeout"] = settings.pg_connect_timeout
    engine = create_async_engine(database_url, echo=settings.debug, future=True, connect_args=connect_args)
    if database_url.startswith("sqlite+aiosqlite://"):
      configure_sqlite(engine)
  return engine


def get_session_factory() -> async_sessionmaker[AsyncSession] | None:
  global SessionLocal
  if SessionLocal is None:
    db_engine = get_db_engine()
    if db_engine:
      SessionLocal = async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)
  return SessionLocal


def is_postgres(session: AsyncSession) -> bool:
  """Return True when the session is bound to PostgreSQL."""
  bind = session.get_bind()
  return bind.dialect.name == "postgresql"


async def create_schema(db_engine: AsyncEngine) -> None:
  """Create all tables for local and test databases."""
  # Import models so they register on the metadata before create_all runs.
  import app.schema.jobs  # noqa: F401

  async with db_engine.begin() as connection:
    await connection.run_sync(Base.metadata.create_all)

