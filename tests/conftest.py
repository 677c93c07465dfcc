from typing import Any, Dict

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.core.locks import LessonLockStore
from app.core.services import build_services
from app.db import build_session_factory
from app.main import app
from app.models import Base
from app.routes.lesson_routes import get_session_factory
from fakes import FakeLlm


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        openai_api_key="test-key",
        redis_url=None,
        job_max_tries=1,
        ai_lesson_job_max_tries=1,
        analysis_job_max_tries=1,
        job_backoff_seconds=0,
        words_min_items=1,
        sentences_min_items=1,
    )


@pytest.fixture
def fake_llm() -> FakeLlm:
    return FakeLlm()


@pytest.fixture
def services(settings, fake_llm):
    return build_services(settings, llm=fake_llm)


@pytest.fixture
def locks() -> LessonLockStore:
    return LessonLockStore(None)


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def job_overrides(settings, session_factory, services, locks) -> Dict[str, Any]:
    return {
        "settings": settings,
        "session_factory": session_factory,
        "services": services,
        "locks": locks,
    }


@pytest.fixture
async def async_client(session_factory):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
