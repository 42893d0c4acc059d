"""
Pytest configuration and shared fixtures for backend tests.
"""
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Set test config directory before importing modules
os.environ["CONFIG_DIR"] = "/tmp/channel_rules_test_config"

# Ensure test config directory exists
Path("/tmp/channel_rules_test_config").mkdir(parents=True, exist_ok=True)

from database import Base
from models import (  # noqa: F401
    MappingRule, ChannelFilter, StreamProxy, ProxyStreamSource, ProxyEpgSource, ProxyFilter,
)
from channel_record import ChannelRecord
from config import EngineSettings


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    # Create all tables
    Base.metadata.create_all(bind=engine)
    yield engine
    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_session(test_engine):
    """Create a test database session."""
    # expire_on_commit=False allows accessing object attributes after commit/close
    TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)
    session = TestSessionLocal()
    yield session
    session.close()


@pytest.fixture(scope="function")
async def async_client(test_engine):
    """
    Create an async test client for the FastAPI app.

    Routers call get_session() directly, so the database module's session
    factory is pointed at the in-memory engine for the duration of the test.
    """
    from httpx import AsyncClient, ASGITransport
    import database
    from main import app

    original_session_local = database._SessionLocal
    TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)
    database._SessionLocal = TestSessionLocal

    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        # Restore original session local
        database._SessionLocal = original_session_local


@pytest.fixture
def engine_settings():
    """Default engine settings, independent of any settings file on disk."""
    return EngineSettings()


@pytest.fixture
def stream_records():
    """A small, mixed stream lineup."""
    return [
        ChannelRecord.from_stream({"id": "1", "channel_name": "BBC One HD", "group_title": "UK",
                                   "tvg_id": "bbc1.uk", "stream_url": "http://a/1"}),
        ChannelRecord.from_stream({"id": "2", "channel_name": "ITV", "group_title": "UK",
                                   "tvg_id": "itv.uk", "stream_url": "http://a/2"}),
        ChannelRecord.from_stream({"id": "3", "channel_name": "Sky Sports Main Event",
                                   "group_title": "Sports", "stream_url": "http://a/3"}),
        ChannelRecord.from_stream({"id": "4", "channel_name": "CNN", "group_title": "24h News",
                                   "stream_url": "http://a/4"}),
    ]
