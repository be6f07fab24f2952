"""Database engine and session utilities.

Attributes:
    engine (AsyncEngine): Primary SQLModel async engine.
    SessionLocal (async_sessionmaker): Factory for yielding AsyncSession objects.

Functions:
    init_db(): Create database tables and ensure SQLite schema patches are applied.
    get_session(): Dependency that yields an AsyncSession for request handlers.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from opinion_map.core.config import get_settings
from opinion_map.models import ACTIVE_STATUSES

_settings = get_settings()

if _settings.database_url.startswith("sqlite+aiosqlite:///") and ":memory:" not in _settings.database_url:
    _db_path = Path(_settings.database_url.replace("sqlite+aiosqlite:///", "")).resolve()
    if _db_path.parent.name:
        _db_path.parent.mkdir(parents=True, exist_ok=True)


engine: AsyncEngine = create_async_engine(
    _settings.database_url,
    echo=False,
    future=True,
    connect_args=(
        {"check_same_thread": False}
        if _settings.database_url.startswith("sqlite")
        else {}
    ),
)

SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        if _settings.database_url.startswith("sqlite"):
            await _ensure_sqlite_schema(conn)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session


async def _ensure_sqlite_schema(conn) -> None:
    """Apply lightweight, idempotent schema patches for SQLite."""

    await conn.exec_driver_sql("PRAGMA journal_mode=WAL")
    await conn.exec_driver_sql("PRAGMA synchronous=NORMAL")

    result = await conn.exec_driver_sql("PRAGMA table_info(opinion_sessions)")
    session_columns = {row[1] for row in result.fetchall()}

    if "explained_variance" not in session_columns:
        await conn.exec_driver_sql("ALTER TABLE opinion_sessions ADD COLUMN explained_variance FLOAT")

    if "error_detail" not in session_columns:
        await conn.exec_driver_sql("ALTER TABLE opinion_sessions ADD COLUMN error_detail TEXT")

    if "timings" not in session_columns:
        await conn.exec_driver_sql("ALTER TABLE opinion_sessions ADD COLUMN timings JSON")

    result = await conn.exec_driver_sql("PRAGMA table_info(post_projections)")
    projection_columns = {row[1] for row in result.fetchall()}

    if "is_outlier" not in projection_columns:
        await conn.exec_driver_sql(
            "ALTER TABLE post_projections ADD COLUMN is_outlier BOOLEAN DEFAULT 0"
        )

    active = ", ".join(f"'{status}'" for status in ACTIVE_STATUSES)
    await conn.exec_driver_sql(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_opinion_sessions_one_active_per_zone "
        f"ON opinion_sessions (zone_id) WHERE status IN ({active})"
    )
