import os
import sys
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add engine root to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]

if str(PROJECT_ROOT) not in sys.path:  # pragma: no cover
    sys.path.append(str(PROJECT_ROOT))


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_session_factory() -> Generator[sessionmaker, None, None]:
    """Session factory over one shared in-memory SQLite connection."""
    from pipwatch_engine.persistence.models import Base

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield sessionmaker(bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def in_memory_db(db_session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Create an in-memory SQLite database for testing."""
    session = db_session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clean_config_env() -> Generator[None, None, None]:
    """Ensure PIPWATCH_* env vars do not interfere with tests unless explicitly set."""
    original_env = {}
    keys_to_clear = [key for key in os.environ if key.startswith("PIPWATCH_")] + [
        "MAX_TICKS",
        "ENGINE_CONFIG_PATH",
        "DATABASE_URL",
        "SENTRY_DSN",
        "METRICS_PORT",
        "TELEGRAM_BOT_TOKEN",
        "TELEGRAM_CHAT_ID",
    ]

    for key in keys_to_clear:
        if key in os.environ:
            original_env[key] = os.environ[key]
            os.environ.pop(key, None)

    yield

    for key, value in original_env.items():
        os.environ[key] = value


class RecordingDispatcher:
    """Collects dispatched notification events in order."""

    def __init__(self) -> None:
        self.events: list = []

    def dispatch(self, event) -> None:
        self.events.append(event)

    def close(self, timeout: float = 5.0) -> None:
        return None

    def of_type(self, event_type: type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture
def recording_dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()
