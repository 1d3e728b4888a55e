import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing the app
os.environ["APP_ENV"] = "dev"
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "test_token")
os.environ.setdefault("TELEGRAM_DRY_RUN", "true")
os.environ.setdefault("ADMIN_IDS", "9001,9002")
os.environ.setdefault("CHANNEL_ID", "@jumarket")
os.environ.setdefault("BOT_USERNAME", "jumarket_bot")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")  # Disable rate limiting in tests
# Note: TELEGRAM_WEBHOOK_SECRET and ADMIN_API_KEY not set by default; tests that need them patch settings

from marketbot.core.config import Settings
from marketbot.db.base import Base
from marketbot.db.deps import get_db
import marketbot.db.models as _models  # noqa: F401
from marketbot.main import app
from marketbot.middleware.rate_limit import reset_rate_limits
from marketbot.services.bot import MarketBot, set_bot
from marketbot.services.metrics import reset_metrics
from tests.helpers.recording_gateway import RecordingGateway

ADMIN_ID = 9001
SECOND_ADMIN_ID = 9002
ADMIN_IDS = [ADMIN_ID, SECOND_ADMIN_ID]

SQLALCHEMY_DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///:memory:")


def is_sqlite() -> bool:
    return (SQLALCHEMY_DATABASE_URL or "").startswith("sqlite")


if is_sqlite():
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    engine = create_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# The entity store and system events open their own sessions; point them at the test DB
import marketbot.db.session as _db_session

_db_session.engine = engine
_db_session.SessionLocal = TestingSessionLocal


def make_test_config(**overrides) -> Settings:
    """Settings with the send/browse delays removed so fan-out tests run instantly."""
    values = {
        "moderation_browse_delay_seconds": 0,
        "broadcast_send_delay_seconds": 0,
        "broadcast_progress_every": 10,
        "admin_page_size": 10,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def _reset_process_state():
    reset_metrics()
    reset_rate_limits()
    yield
    set_bot(None)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def bot(db, gateway):
    """A fully wired bot over the test database and a recording gateway."""
    marketbot = MarketBot(gateway=gateway, admin_ids=ADMIN_IDS, config=make_test_config())
    set_bot(marketbot)
    yield marketbot
    set_bot(None)


@pytest.fixture(scope="function")
def client(db, bot):
    """Create a test client with database dependency override."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
