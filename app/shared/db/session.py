import time
from dataclasses import dataclass
from threading import Lock
from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.shared.core.config import get_settings
from app.shared.db.base import Base

logger = structlog.get_logger()

# Ensure ORM mappings are registered before metadata is used.
import app.models  # noqa: F401, E402


@dataclass(slots=True)
class _DBRuntime:
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    pool_config: dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": bool(getattr(settings_obj, "DB_ECHO", False)),
    }
    # In-memory sqlite only survives on a single shared connection.
    if "sqlite" in effective_url and ":memory:" in effective_url:
        pool_config["poolclass"] = StaticPool
    return pool_config


def before_cursor_execute(
    conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: bool
) -> None:
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(
    conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: bool
) -> None:
    starts = conn.info.get("query_start_time") or []
    if not starts:
        return
    total = time.perf_counter() - starts.pop(-1)
    threshold = float(get_settings().DB_SLOW_QUERY_THRESHOLD_SECONDS)
    if total > threshold:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
        )


def _register_engine_event_listeners(engine: AsyncEngine) -> None:
    event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", after_cursor_execute)


def build_engine(database_url: str) -> AsyncEngine:
    effective_url = _normalize_db_url(database_url)
    engine = create_async_engine(
        effective_url, **_build_pool_config(get_settings(), effective_url)
    )
    _register_engine_event_listeners(engine)
    return engine


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    db_url = str(settings_obj.DATABASE_URL or "").strip()
    if not db_url:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    engine = build_engine(db_url)
    # expire_on_commit=False: rows stay readable after the per-call commit.
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _DBRuntime(
        engine=engine,
        session_maker=session_maker,
        effective_url=_normalize_db_url(db_url),
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        runtime = _db_runtime
        if runtime is None:
            runtime = _build_db_runtime()
            _db_runtime = runtime
    return runtime


def get_engine() -> AsyncEngine:
    return _get_db_runtime().engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    return _get_db_runtime().session_maker


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the SCIM tables if they do not exist yet."""
    target = engine or get_engine()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_ready", tables=sorted(Base.metadata.tables))


async def dispose_db_runtime() -> None:
    global _db_runtime
    runtime = _db_runtime
    _db_runtime = None
    if runtime is not None:
        await runtime.engine.dispose()
