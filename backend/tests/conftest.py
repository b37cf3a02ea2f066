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
os.environ["CONFIG_DIR"] = "/tmp/recording_scheduler_test_config"

# Ensure test config directory exists
Path("/tmp/recording_scheduler_test_config").mkdir(parents=True, exist_ok=True)

from database import Base
from models import JournalEntry  # noqa: F401 - registers table
from config import CONFIG_FILE, RecorderSettings, clear_settings_cache
from notifications import NotificationHub
from recorder.command_builder import RecorderCommandBuilder
from recorder.process_supervisor import ProcessSupervisor
from recorder.store import RecordingStore
from recording_scheduler import RecordingScheduler

TEST_SESSION_KEY = "xtream_iptv.example.com_8080_tester"


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
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


@pytest.fixture
def recorder_settings(tmp_path):
    """Settings pointing recordings at a temp directory and ffmpeg at a bare name."""
    return RecorderSettings(
        recording_directory=str(tmp_path / "recordings"),
        ffmpeg_path="ffmpeg",
        session_key=TEST_SESSION_KEY,
        stop_grace_seconds=0.5,
        series_initial_delay_seconds=0,
    )


@pytest.fixture
def store(tmp_path):
    """Recording store backed by a temp data directory."""
    return RecordingStore(tmp_path / "data", TEST_SESSION_KEY)


@pytest.fixture
def supervisor(recorder_settings):
    supervisor = ProcessSupervisor(
        RecorderCommandBuilder(recorder_settings.ffmpeg_path, recorder_settings.ffmpeg_args_template),
        stop_grace_seconds=recorder_settings.stop_grace_seconds,
    )
    yield supervisor
    for handle in supervisor.active_handles():
        supervisor.kill(handle)


@pytest.fixture
def notification_hub():
    return NotificationHub()


@pytest.fixture
def events(notification_hub):
    """Every event published on the hub, in order."""
    received = []
    notification_hub.subscribe(received.append)
    return received


@pytest.fixture
def journal_calls():
    """Journal sink recording the keyword arguments of each call."""
    calls = []

    def _journal(**kwargs):
        calls.append(kwargs)

    _journal.calls = calls
    return _journal


@pytest.fixture
def scheduler(store, supervisor, recorder_settings, notification_hub, journal_calls):
    return RecordingScheduler(
        store,
        supervisor,
        recorder_settings,
        notifications=notification_hub,
        journal=journal_calls,
    )


@pytest.fixture(scope="function")
async def async_client(test_session, test_engine, scheduler):
    """
    Create an async test client for the FastAPI app.

    The lifespan does not run under ASGITransport, so the scheduler fixture is
    placed on app.state directly and the journal uses the in-memory database.
    """
    from httpx import AsyncClient, ASGITransport
    import database
    from main import app

    original_session_local = database._SessionLocal
    database._SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)
    app.state.scheduler = scheduler
    clear_settings_cache()
    CONFIG_FILE.unlink(missing_ok=True)

    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.state.scheduler = None
        database._SessionLocal = original_session_local
        clear_settings_cache()
        CONFIG_FILE.unlink(missing_ok=True)


@pytest.fixture
def sample_journal_entry(test_session):
    """Create a sample journal entry for testing."""
    from datetime import datetime
    entry = JournalEntry(
        timestamp=datetime.utcnow(),
        category="recording",
        action_type="scheduled",
        entity_id="abc123",
        entity_name="Evening News",
        description="Scheduled for tomorrow",
        user_initiated=True,
    )
    test_session.add(entry)
    test_session.commit()
    test_session.refresh(entry)
    return entry


# Pytest-asyncio configuration
@pytest.fixture(scope="session")
def event_loop_policy():
    """Use the default event loop policy."""
    import asyncio
    return asyncio.DefaultEventLoopPolicy()
