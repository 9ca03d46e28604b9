"""
Application wiring.
"""

import logging
from typing import Optional

from smartalerts.audit import SqliteAuditSink
from smartalerts.config import AppConfig
from smartalerts.data.assets import AssetRegistry
from smartalerts.data.fetcher import CoinGeckoSnapshotProvider, MarketSnapshotProvider
from smartalerts.data.indicators import IndicatorCalculator
from smartalerts.database.connection import Database
from smartalerts.database.models import CHANNELS
from smartalerts.database.repository import (
    AlertRepository,
    AuditLogRepository,
    DispatchRecordRepository,
    PreferenceRepository,
    UserRepository,
)
from smartalerts.notifications.dispatcher import Dispatcher
from smartalerts.notifications.frequency import FrequencyAggregator
from smartalerts.notifications.preferences import PreferenceStore
from smartalerts.notifiers.base import Notifier, NotifierFactory
from smartalerts.notifiers.stub import PushNotifier, SimulatedNotifier, SmsNotifier
from smartalerts.scheduler import AlertLocks, EvaluationScheduler
from smartalerts.service import AlertService

logger = logging.getLogger(__name__)


def build_adapters(config: AppConfig, dry_run: bool = False) -> dict[str, Notifier]:
    """Channel adapters by name. A dry run replaces email with a stub."""
    adapters: dict[str, Notifier] = {
        "push": PushNotifier(),
        "sms": SmsNotifier(),
    }
    if dry_run:
        adapters["email"] = SimulatedNotifier("email")
        return adapters

    email = config.notifications.email
    adapters["email"] = NotifierFactory.create(
        {
            "type": "email",
            "smtp_host": email.smtp_host,
            "smtp_port": email.smtp_port,
            "smtp_user": email.smtp_user,
            "smtp_password": email.smtp_password,
            "from_address": email.from_address,
            "app_url": email.app_url,
            "timeout": config.dispatch.timeout_seconds,
        }
    )
    return adapters


class SmartAlertsApp:
    """Alert engine with its collaborators wired from configuration."""

    def __init__(
        self,
        db: Database,
        config: Optional[AppConfig] = None,
        provider: Optional[MarketSnapshotProvider] = None,
        adapters: Optional[dict[str, Notifier]] = None,
        dry_run: bool = False,
    ):
        """
        Initialize the app.

        Args:
            db: Database instance (already initialized)
            config: Application configuration, defaults when omitted
            provider: Market snapshot provider, CoinGecko when omitted
            adapters: Channel adapters, built from config when omitted
            dry_run: Simulate every channel instead of sending
        """
        self.db = db
        self.config = config or AppConfig()
        config = self.config

        # Initialize repositories
        self.user_repo = UserRepository(db)
        self.alert_repo = AlertRepository(db)
        self.preference_repo = PreferenceRepository(db)
        self.record_repo = DispatchRecordRepository(db)
        self.audit_repo = AuditLogRepository(db)

        # Initialize services
        self.audit = SqliteAuditSink(self.audit_repo)
        self.preferences = PreferenceStore(self.preference_repo)
        self.provider = provider or self._build_provider()

        adapters = adapters or build_adapters(config, dry_run=dry_run)
        missing = [c for c in CHANNELS if c not in adapters]
        if missing:
            raise ValueError(f"No adapter for channel(s): {', '.join(missing)}")

        self.dispatcher = Dispatcher(
            adapters,
            self.record_repo,
            max_retries=config.dispatch.max_retries,
            backoff_seconds=config.dispatch.backoff_seconds,
            backoff_factor=config.dispatch.backoff_factor,
            timeout_seconds=config.dispatch.timeout_seconds,
            max_workers=config.dispatch.max_workers,
        )
        self.aggregator = FrequencyAggregator(
            self.alert_repo,
            self.user_repo,
            self.record_repo,
            self.preferences,
            self.dispatcher,
        )
        self.locks = AlertLocks()
        self.scheduler = EvaluationScheduler(
            self.alert_repo,
            self.provider,
            self.aggregator,
            audit=self.audit,
            locks=self.locks,
            interval_seconds=config.scheduler.interval_seconds,
            max_workers=config.scheduler.max_workers,
            fetch_timeout=config.scheduler.fetch_timeout_seconds,
            tick_timeout=config.scheduler.tick_timeout_seconds,
        )
        self.service = AlertService(
            self.alert_repo,
            self.user_repo,
            self.preferences,
            self.record_repo,
            audit=self.audit,
            scheduler=self.scheduler,
            locks=self.locks,
        )

    def _build_provider(self) -> MarketSnapshotProvider:
        market = self.config.market_data
        registry = AssetRegistry(market.base_url, timeout=market.timeout_seconds)
        return CoinGeckoSnapshotProvider(
            base_url=market.base_url,
            timeout=market.timeout_seconds,
            cache_ttl=market.cache_ttl_seconds,
            api_key=market.api_key,
            indicators=IndicatorCalculator(registry),
        )

    def close(self) -> None:
        """Stop the scheduler and release pools and the database."""
        self.scheduler.stop()
        self.dispatcher.close()
        self.db.close()
