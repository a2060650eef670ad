"""Pytest fixtures: in-memory async DB for services, file DB + TestClient for routes."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("API_KEY_USER_ID", "1")

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from careerpulse.main import app
from careerpulse.database import get_db
from careerpulse.models import Base, EmailCredential, User, utcnow
from careerpulse.schemas import RawMessage
from careerpulse.services.extraction_cache import ExtractionCache
from careerpulse.services.field_extractor import FieldExtractor


# =============================================================================
# Service tests: one in-memory aiosqlite database per test
# =============================================================================

@pytest.fixture
async def async_session():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    Session = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    async with Session() as session:
        yield session
    await engine.dispose()


@pytest.fixture
async def user(async_session):
    u = User(id=1, email="alice@example.com", name="Alice")
    async_session.add(u)
    await async_session.commit()
    return u


@pytest.fixture
async def other_user(async_session):
    u = User(id=2, email="bob@example.com", name="Bob")
    async_session.add(u)
    await async_session.commit()
    return u


@pytest.fixture
async def credential(async_session, user):
    row = EmailCredential(
        user_id=user.id,
        provider="gmail",
        email="alice@gmail.com",
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=utcnow() + timedelta(hours=1),
    )
    async_session.add(row)
    await async_session.commit()
    return row


@pytest.fixture
def make_message():
    def _make(
        msg_id="m1",
        subject="Thank you for your application",
        body="We received your application for the Software Engineer position.",
        sender="jobs@acme.com",
        received_at=datetime(2026, 3, 2, 15, 30),
    ):
        return RawMessage(id=msg_id, sender=sender, subject=subject, body=body, received_at=received_at)
    return _make


@pytest.fixture
def extractor():
    """FieldExtractor whose model call is an AsyncMock; set extractor._call_llm.return_value / side_effect."""
    ex = FieldExtractor(client=None, cache=ExtractionCache(max_size=100))
    ex._call_llm = AsyncMock()
    return ex


# =============================================================================
# Route tests: file DB shared by a sync seeding engine and the async app engine
# =============================================================================

@pytest.fixture
def db_urls(tmp_path):
    """
    Use a file-based sqlite DB so sync setup code (tests) and async app sessions
    can see the same data.
    """
    db_path = tmp_path / "test.db"
    sync_url = f"sqlite:///{db_path}"
    async_url = f"sqlite+aiosqlite:///{db_path}"
    return sync_url, async_url


@pytest.fixture
def db_engine(db_urls):
    sync_url, _ = db_urls
    engine = create_engine(sync_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db_session(db_engine):
    from sqlalchemy.orm import sessionmaker
    Session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = Session()
    session.add(User(id=1, email="alice@example.com", name="Alice"))
    session.add(User(id=2, email="bob@example.com", name="Bob"))
    session.commit()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db_urls, db_session):
    _, async_url = db_urls
    async_engine = create_async_engine(
        async_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)

    async def override_get_db():
        async with AsyncSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"X-API-Key": "test-api-key"}
