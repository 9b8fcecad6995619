"""Database engine and session utilities.

Functions:
    create_engine(settings): Build the async engine for the configured database URL.
    create_session_factory(engine): Factory yielding AsyncSession objects, one per store operation.
    init_db(engine): Create tables, then apply SQLite pragmas and extra indexes.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from workshop_rag.core.config import Settings

# registers the tables on SQLModel.metadata
import workshop_rag.models  # noqa: F401


def create_engine(settings: Settings) -> AsyncEngine:
    url = settings.database_url
    is_sqlite = url.startswith("sqlite")
    is_memory = is_sqlite and (":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"))

    if is_sqlite and not is_memory:
        db_path = Path(url.split(":///", 1)[-1]).resolve()
        if db_path.parent.name:
            db_path.parent.mkdir(parents=True, exist_ok=True)

    kwargs: dict = {"echo": False, "future": True}
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
    if is_memory:
        kwargs["poolclass"] = StaticPool
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        if engine.dialect.name == "sqlite":
            await _ensure_sqlite_schema(conn)


async def _ensure_sqlite_schema(conn) -> None:
    """Idempotent SQLite tuning: WAL for file databases and a newest-first index."""

    database = conn.engine.url.database or ""
    if database and database != ":memory:":
        await conn.exec_driver_sql("PRAGMA journal_mode=WAL")
        await conn.exec_driver_sql("PRAGMA synchronous=NORMAL")

    await conn.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS ix_document_embeddings_created_desc "
        "ON document_embeddings (created_at DESC)"
    )
