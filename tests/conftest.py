"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timezone
from typing import Optional

import pytest

from smartalerts.app import SmartAlertsApp
from smartalerts.config import AppConfig
from smartalerts.data.fetcher import MarketSnapshotProvider
from smartalerts.database.connection import Database
from smartalerts.database.models import User
from smartalerts.database.repository import UserRepository
from smartalerts.errors import MarketDataError
from smartalerts.notifiers.base import Notifier, NotificationMessage, NotificationResult
from smartalerts.notifiers.stub import PushNotifier, SmsNotifier


class FakeProvider(MarketSnapshotProvider):
    """Serves values set by the test; unknown keys fail like an outage."""

    def __init__(self, values: Optional[dict] = None):
        self.values = dict(values or {})
        self.calls: list[tuple[str, str]] = []

    def get_value(self, asset: str, metric: str) -> float:
        self.calls.append((asset, metric))
        if (asset, metric) not in self.values:
            raise MarketDataError(f"No value for {asset} {metric}")
        return self.values[(asset, metric)]


class RecordingNotifier(Notifier):
    """Email stand-in that records messages and can fail on demand."""

    def __init__(self, channel: str = "email", failures: int = 0, error: str = "SMTP down"):
        self.channel = channel
        self.failures = failures
        self.error = error
        self.messages: list[NotificationMessage] = []

    def send(self, message: NotificationMessage) -> NotificationResult:
        self.messages.append(message)
        if self.failures > 0:
            self.failures -= 1
            return NotificationResult(success=False, channel=self.channel, error=self.error)
        return NotificationResult(success=True, channel=self.channel)


@pytest.fixture
def db():
    """Fresh in-memory database with schema."""
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def user(db) -> User:
    """A user with an email address."""
    return UserRepository(db).create(
        User(email="trader@example.com", name="Trader Joe", phone="+15550100")
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def email_adapter() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_notifier():
    """Factory for recording adapters with scripted failures."""
    return RecordingNotifier


@pytest.fixture
def app_config() -> AppConfig:
    """Defaults with retries that do not sleep."""
    config = AppConfig()
    config.database.path = ":memory:"
    config.dispatch.backoff_seconds = 0
    config.dispatch.max_retries = 2
    return config


@pytest.fixture
def app(db, app_config, provider, email_adapter):
    """Fully wired engine over the in-memory database."""
    application = SmartAlertsApp(
        db=db,
        config=app_config,
        provider=provider,
        adapters={
            "email": email_adapter,
            "push": PushNotifier(),
            "sms": SmsNotifier(),
        },
    )
    yield application
    application.scheduler.stop()
    application.dispatcher.close()


@pytest.fixture
def at():
    """Build aware UTC datetimes tersely."""

    def _at(year=2026, month=3, day=2, hour=12, minute=0):
        return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)

    return _at
