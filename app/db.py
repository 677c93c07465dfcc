"""
Database configuration with connection pooling and async support
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from app.config import Settings, get_settings


def build_engine(settings: Settings) -> AsyncEngine:
    engine_kwargs = {
        "echo": settings.database_echo,
        "pool_pre_ping": True,
    }

    if settings.is_production:
        engine_kwargs.update({
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": settings.database_pool_size,
            "max_overflow": settings.database_pool_size * 2,
        })
    else:
        # NullPool in dev avoids stale connections across reloads
        engine_kwargs.update({
            "poolclass": NullPool,
        })

    return create_async_engine(settings.database_url, **engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


def async_session() -> AsyncSession:
    """New session from the application-wide factory"""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory()
