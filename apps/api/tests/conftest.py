from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base
from main import app
import models  # noqa: F401
from routers import rate_limit
from services.events import TranscriptEventBus


SESSION_MAKER_TARGETS = (
    "services.media_store.async_session_maker",
    "services.transcript_store.async_session_maker",
    "services.transcription_job.async_session_maker",
    "services.job_queue.async_session_maker",
    "services.study_content.async_session_maker",
)


@pytest.fixture(autouse=True)
def reset_submission_quotas():
    """Keep in-memory quota state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._fallback_windows.clear()
    yield
    rate_limit._fallback_windows.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def media_dirs(tmp_path):
    upload_root = tmp_path / "uploads"
    work_root = tmp_path / "work"
    with (
        patch.object(settings, "MEDIA_UPLOAD_DIR", str(upload_root)),
        patch.object(settings, "MEDIA_TEMP_DIR", str(work_root)),
    ):
        yield upload_root, work_root


@pytest_asyncio.fixture
async def session_maker(tmp_path, media_dirs):
    """Fresh sqlite database wired into every service that opens sessions."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'studyscribe.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    patches = [patch(target, maker) for target in SESSION_MAKER_TARGETS]
    for item in patches:
        item.start()
    try:
        yield maker
    finally:
        for item in reversed(patches):
            item.stop()
        await engine.dispose()


@pytest.fixture
def event_bus():
    return TranscriptEventBus()


@pytest_asyncio.fixture
async def api_client(session_maker, event_bus):
    previous_bus = getattr(app.state, "event_bus", None)
    app.state.event_bus = event_bus
    with patch.object(settings, "JOB_BACKEND", "inline"):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client
    app.state.event_bus = previous_bus
