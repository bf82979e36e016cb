import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import TimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from arang_chat.settings import Settings, settings

Base = declarative_base()

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(app_settings: Settings) -> AsyncEngine:
    url = make_url(app_settings.database_url)
    options: dict[str, Any] = {"pool_pre_ping": True}
    # SQLite file databases (local runs) keep SQLAlchemy's default pool.
    if url.get_backend_name() == "postgresql":
        options.update(
            pool_size=app_settings.database_pool_size,
            max_overflow=app_settings.database_max_overflow,
            pool_timeout=app_settings.database_pool_timeout_seconds,
        )
    engine = create_async_engine(url, **options)
    _watch_pool_timeouts(engine)
    logger.info("db_engine_created", extra={"extra": {"backend": url.get_backend_name(), "database": url.database}})
    return engine


def get_session_factory(app_settings: Settings | None = None) -> async_sessionmaker[AsyncSession]:
    global _engine, _session_factory
    if _session_factory is None:
        _engine = build_engine(app_settings or settings)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    return _session_factory


async def dispose_engine() -> None:
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()


def _watch_pool_timeouts(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "handle_error")
    def _on_error(context):  # noqa: ANN001
        exc = context.original_exception or context.sqlalchemy_exception
        if isinstance(exc, TimeoutError):
            logger.warning("db_pool_timeout", extra={"extra": {"statement": context.statement}})
