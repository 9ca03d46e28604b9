"""
Engine health check: staleness, pending digests and failed deliveries.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from smartalerts.database.connection import Database
from smartalerts.database.models import FAILED, utcnow
from smartalerts.database.repository import AlertRepository, DispatchRecordRepository

# An alert is stale after missing this many ticks
STALE_INTERVALS = 3


@dataclass
class HealthReport:
    """Snapshot of how far behind the engine is."""

    checked_at: datetime
    active_alerts: int
    stale_alerts: int
    pending_triggers: int
    failed_deliveries_24h: int

    @property
    def healthy(self) -> bool:
        return self.stale_alerts == 0

    def summary(self) -> str:
        status = "OK" if self.healthy else "DEGRADED"
        return (
            f"{self.checked_at.strftime('%Y-%m-%d %H:%M:%S')} - {status}: "
            f"{self.active_alerts} active, {self.stale_alerts} stale, "
            f"{self.pending_triggers} pending, "
            f"{self.failed_deliveries_24h} failed deliveries in 24h"
        )


def run_healthcheck(
    db: Database,
    interval_seconds: float,
    now: Optional[datetime] = None,
) -> HealthReport:
    """Run health check against the alert store.

    Args:
        db: Database instance (already initialized)
        interval_seconds: Scheduler tick interval
        now: Reference time, defaults to the current time
    """
    now = now or utcnow()
    alerts = AlertRepository(db)
    records = DispatchRecordRepository(db)

    cutoff = now - timedelta(seconds=interval_seconds * STALE_INTERVALS)
    failed = records.status_counts(since=now - timedelta(hours=24)).get(FAILED, 0)

    return HealthReport(
        checked_at=now,
        active_alerts=len(alerts.list_active()),
        stale_alerts=len(alerts.list_stale(cutoff)),
        pending_triggers=len(alerts.pending_triggers()),
        failed_deliveries_24h=failed,
    )
