import ssl
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, AsyncGenerator, Dict

import structlog
from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.shared.core.config import get_settings

logger = structlog.get_logger()

# Ensure ORM mappings are registered for workers that import the DB layer
# without importing `app/main.py`.
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


def _resolve_effective_url(settings_obj: Any) -> str:
    db_url = _normalize_db_url(str(settings_obj.DATABASE_URL or ""))
    if settings_obj.TESTING and "sqlite" not in db_url:
        # Tests never write to a real database.
        return "sqlite+aiosqlite:///:memory:"
    return db_url


def _build_connect_args(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    if "postgresql" not in effective_url:
        return {}

    connect_args: dict[str, Any] = {"statement_cache_size": 0}
    ssl_mode = str(settings_obj.DB_SSL_MODE).lower()

    if ssl_mode == "disable":
        logger.warning("database_ssl_disabled", msg="SSL disabled, do not use in production")
        connect_args["ssl"] = False
        return connect_args

    if ssl_mode == "require":
        ssl_context = ssl.create_default_context()
        if settings_obj.DB_SSL_CA_CERT_PATH:
            ssl_context.load_verify_locations(cafile=settings_obj.DB_SSL_CA_CERT_PATH)
        elif settings_obj.is_production:
            raise ValueError(
                "DB_SSL_CA_CERT_PATH is mandatory when DB_SSL_MODE=require in production."
            )
        else:
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
            logger.warning("database_ssl_require_insecure", msg="CA verification skipped")
        connect_args["ssl"] = ssl_context
        return connect_args

    if ssl_mode in {"verify-ca", "verify-full"}:
        if not settings_obj.DB_SSL_CA_CERT_PATH:
            raise ValueError(f"DB_SSL_CA_CERT_PATH required for ssl_mode={ssl_mode}")
        ssl_context = ssl.create_default_context(cafile=settings_obj.DB_SSL_CA_CERT_PATH)
        ssl_context.check_hostname = ssl_mode == "verify-full"
        connect_args["ssl"] = ssl_context
        return connect_args

    raise ValueError(
        f"Invalid DB_SSL_MODE: {ssl_mode}. Use: disable, require, verify-ca, verify-full"
    )


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    pool_config: dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": settings_obj.DB_ECHO,
    }
    if "sqlite" in effective_url:
        pool_config["poolclass"] = StaticPool
        return pool_config

    pool_config.update(
        {
            "pool_recycle": settings_obj.DB_POOL_RECYCLE,
            "pool_size": settings_obj.DB_POOL_SIZE,
            "max_overflow": settings_obj.DB_MAX_OVERFLOW,
            "pool_timeout": settings_obj.DB_POOL_TIMEOUT,
        }
    )
    return pool_config


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    if not settings_obj.DATABASE_URL and not settings_obj.TESTING:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    effective_url = _resolve_effective_url(settings_obj)
    engine = create_async_engine(
        effective_url,
        **_build_pool_config(settings_obj, effective_url),
        connect_args=_build_connect_args(settings_obj, effective_url),
    )
    event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", after_cursor_execute)
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _DBRuntime(engine=engine, session_maker=session_maker, effective_url=effective_url)


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        if _db_runtime is None:
            _db_runtime = _build_db_runtime()
        return _db_runtime


def reset_db_runtime() -> None:
    """Test helper for forcing runtime re-initialization on next access."""
    global _db_runtime
    runtime, _db_runtime = _db_runtime, None
    if runtime is not None:
        runtime.engine.sync_engine.dispose()


def get_engine() -> AsyncEngine:
    """Return the active async engine."""
    return _get_db_runtime().engine


def async_session_maker(*args: Any, **kwargs: Any) -> AsyncSession:
    """Return a new async session from the active session factory."""
    return _get_db_runtime().session_maker(*args, **kwargs)


def before_cursor_execute(
    conn: Connection,
    _cursor: Any,
    _statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(
    conn: Connection,
    _cursor: Any,
    statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Log slow queries."""
    total = time.perf_counter() - conn.info["query_start_time"].pop(-1)
    threshold = get_settings().DB_SLOW_QUERY_THRESHOLD_SECONDS
    if total > threshold:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            threshold_seconds=threshold,
            statement=statement[:200],
        )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def health_check() -> Dict[str, Any]:
    """Run a trivial query and report latency."""
    start = time.perf_counter()
    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("database_health_check_failed", error=str(exc))
        return {"status": "down", "error": type(exc).__name__}
    return {"status": "up", "latency_ms": round((time.perf_counter() - start) * 1000, 2)}
