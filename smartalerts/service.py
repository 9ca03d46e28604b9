"""
User-facing alert and preference operations.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from smartalerts.audit import (
    ALERT_ADMIN_OVERRIDE,
    ALERTS_BULK_TOGGLED,
    PREFERENCES_UPDATED,
    AuditSink,
    LoggingAuditSink,
)
from smartalerts.database.models import (
    FAILED,
    SENT,
    Alert,
    DispatchRecord,
    NotificationPreference,
    utcnow,
)
from smartalerts.database.repository import (
    AlertRepository,
    DispatchRecordRepository,
    UserRepository,
)
from smartalerts.errors import (
    AlertNotFoundError,
    AlertValidationError,
    ConcurrentModificationError,
)
from smartalerts.notifications.preferences import PreferenceStore
from smartalerts.rules.types import ALERT_TYPES, normalize_definition, validate_alert
from smartalerts.scheduler import AlertLocks, EvaluationScheduler

logger = logging.getLogger(__name__)

# Fields that change what an alert measures
_METRIC_FIELDS = ("type", "cryptocurrency")


@dataclass
class AlertStatistics:
    """Aggregate counts derived from the alert store and dispatch records."""

    total: int = 0
    active: int = 0
    triggered: int = 0
    success_rate: float = 100.0
    recent_24h: int = 0
    by_type: dict[str, dict[str, int]] = field(default_factory=dict)


@dataclass
class HistoryPage:
    """One page of triggered alerts."""

    items: list[Alert]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return (self.page - 1) * self.limit + len(self.items) < self.total

    @property
    def has_prev(self) -> bool:
        return self.page > 1


class AlertService:
    """
    Operations exposed to the UI layer.

    Every operation is scoped to the owning user: an alert that does not
    exist and an alert owned by someone else look the same to the caller.
    Writes hold the alert's lock and retry when the scheduler bumped the
    version in between.
    """

    def __init__(
        self,
        alerts: AlertRepository,
        users: UserRepository,
        preferences: PreferenceStore,
        records: DispatchRecordRepository,
        audit: Optional[AuditSink] = None,
        scheduler: Optional[EvaluationScheduler] = None,
        locks: Optional[AlertLocks] = None,
        max_conflict_retries: int = 3,
    ):
        self.alerts = alerts
        self.users = users
        self.preferences = preferences
        self.records = records
        self.audit = audit or LoggingAuditSink()
        self.scheduler = scheduler
        self.locks = locks or (scheduler.locks if scheduler else AlertLocks())
        self.max_conflict_retries = max_conflict_retries

    # Alerts

    def create_alert(self, user_id: int, **fields: Any) -> Alert:
        """
        Create an alert for a user.

        Raises:
            AlertValidationError: If the definition is invalid or the user
                is unknown
        """
        definition = normalize_definition(fields)
        if self.users.get_by_id(user_id) is None:
            raise AlertValidationError(f"Unknown user: {user_id}")

        alert = Alert(
            user_id=user_id,
            is_active=bool(fields.get("is_active", True)),
            **definition,
        )
        alert = self.alerts.create(alert)
        logger.info(
            f"Created {alert.type} alert {alert.id} on {alert.cryptocurrency} "
            f"for user {user_id}"
        )
        return alert

    def list_alerts(self, user_id: int, alert_type: Optional[str] = None) -> list[Alert]:
        """List a user's alerts, optionally filtered by type ("all" for none)."""
        if alert_type == "all":
            alert_type = None
        if alert_type is not None and alert_type not in ALERT_TYPES:
            raise AlertValidationError(f"Invalid alert type: {alert_type}")
        return self.alerts.list_for_user(user_id, alert_type)

    def get_alert(self, user_id: int, alert_id: int) -> Alert:
        alert = self.alerts.get_for_user(user_id, alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        return alert

    def update_alert(self, user_id: int, alert_id: int, **changes: Any) -> Alert:
        """
        Change an alert's definition or active flag.

        Metadata is merged into the existing metadata. Values observed for a
        different asset or metric are dropped. Reactivating an inactive
        alert clears the trigger and the observed values.

        Raises:
            AlertValidationError: If the resulting definition is invalid
            AlertNotFoundError: If the alert is missing or not owned by the user
        """

        def apply(alert: Alert) -> None:
            metadata = {**alert.metadata, **(changes.get("metadata") or {})}
            definition = normalize_definition(
                {
                    "type": changes.get("type") or alert.type,
                    "cryptocurrency": changes.get("cryptocurrency") or alert.cryptocurrency,
                    "condition": changes.get("condition") or alert.condition,
                    "threshold": changes.get("threshold", alert.threshold),
                    "notification_method": changes.get(
                        "notification_method", alert.notification_method
                    ),
                    "metadata": metadata,
                }
            )
            old_metric = (alert.cryptocurrency, alert.metric)
            for name, value in definition.items():
                setattr(alert, name, value)
            if (alert.cryptocurrency, alert.metric) != old_metric:
                alert.current_value = None
                alert.previous_value = None

            if changes.get("is_active") is not None:
                was_active = alert.is_active
                alert.is_active = bool(changes["is_active"])
                if alert.is_active:
                    self._clear(alert)
                    if not was_active:
                        self._forget_values(alert)

        return self._mutate(user_id, alert_id, apply)

    def toggle_alert(self, user_id: int, alert_id: int) -> Alert:
        """
        Flip an alert between active and inactive.

        Deactivation freezes the alert's values and keeps its trigger
        history; reactivation clears the trigger and the observed values.
        """

        def apply(alert: Alert) -> None:
            alert.is_active = not alert.is_active
            if alert.is_active:
                self._clear(alert)
                self._forget_values(alert)

        alert = self._mutate(user_id, alert_id, apply)
        logger.info(
            f"Alert {alert_id} {'activated' if alert.is_active else 'deactivated'}"
        )
        return alert

    def bulk_toggle(self, user_id: int, is_active: bool) -> int:
        """Set every alert of a user active or inactive; returns the number changed."""
        changed = 0
        for alert in self.alerts.list_for_user(user_id):
            if alert.is_active == is_active:
                continue

            def apply(current: Alert) -> None:
                if is_active and not current.is_active:
                    self._clear(current)
                    self._forget_values(current)
                current.is_active = is_active

            try:
                self._mutate(user_id, alert.id, apply)
                changed += 1
            except AlertNotFoundError:
                continue

        self.audit.safe_record(
            user_id,
            ALERTS_BULK_TOGGLED,
            "user",
            user_id,
            f"{'Activated' if is_active else 'Deactivated'} {changed} alert(s)",
            details={"is_active": is_active, "changed": changed},
            category="system",
        )
        return changed

    def clear_trigger(self, user_id: int, alert_id: int) -> Alert:
        """Acknowledge a triggered alert, clearing its sticky flag."""
        return self._mutate(user_id, alert_id, self._clear)

    def delete_alert(self, user_id: int, alert_id: int) -> None:
        """
        Delete an alert.

        Dispatch records and audit entries of the alert are kept.
        """
        with self.locks.hold(alert_id):
            self.get_alert(user_id, alert_id)
            if not self.alerts.delete(alert_id):
                raise AlertNotFoundError(f"Alert {alert_id} not found")
        self.locks.discard(alert_id)
        logger.info(f"Deleted alert {alert_id} of user {user_id}")

    def test_fire(self, user_id: int, alert_id: int) -> list[DispatchRecord]:
        """Send a test notification for an alert and report the outcome per channel."""
        if self.scheduler is None:
            raise RuntimeError("Test fire needs a scheduler")
        self.get_alert(user_id, alert_id)
        return self.scheduler.test_fire(alert_id, actor_id=user_id)

    def admin_set_active(
        self, admin_id: int, alert_id: int, is_active: bool, reason: str = ""
    ) -> Alert:
        """Force an alert on or off regardless of its owner."""
        alert = self.alerts.get_by_id(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")

        def apply(current: Alert) -> None:
            if is_active and not current.is_active:
                self._forget_values(current)
            current.is_active = is_active
            if is_active:
                self._clear(current)

        updated = self._mutate(alert.user_id, alert_id, apply)
        self.audit.safe_record(
            admin_id,
            ALERT_ADMIN_OVERRIDE,
            "alert",
            alert_id,
            f"Alert {alert_id} {'activated' if is_active else 'deactivated'} by admin",
            details={"owner_id": alert.user_id, "reason": reason},
            severity="high",
            category="system",
        )
        return updated

    def _mutate(
        self, user_id: int, alert_id: int, apply: Callable[[Alert], None]
    ) -> Alert:
        for attempt in range(self.max_conflict_retries + 1):
            with self.locks.hold(alert_id):
                alert = self.get_alert(user_id, alert_id)
                apply(alert)
                validate_alert(alert)
                try:
                    return self.alerts.update(alert)
                except ConcurrentModificationError:
                    logger.debug(f"Alert {alert_id} changed during update, retrying")
        raise ConcurrentModificationError(
            f"Alert {alert_id} kept changing, gave up after {attempt + 1} attempts"
        )

    @staticmethod
    def _clear(alert: Alert) -> None:
        alert.is_triggered = False
        alert.triggered_at = None
        alert.pending_since = None

    @staticmethod
    def _forget_values(alert: Alert) -> None:
        # Values seen before a pause must not feed crossings after it
        alert.current_value = None
        alert.previous_value = None

    # Preferences

    def get_preferences(self, user_id: int) -> NotificationPreference:
        return self.preferences.get(user_id)

    def update_preferences(
        self, user_id: int, changes: dict[str, Any]
    ) -> NotificationPreference:
        """
        Apply a partial preference update.

        Raises:
            PreferenceValidationError: If the merged preferences are invalid
        """
        updated = self.preferences.update(user_id, changes)
        self.audit.safe_record(
            user_id,
            PREFERENCES_UPDATED,
            "user",
            user_id,
            "Notification preferences updated",
            details={"changed": sorted(changes)},
            severity="low",
            category="user_management",
        )
        return updated

    # Reporting

    def statistics(self, user_id: int, now: Optional[datetime] = None) -> AlertStatistics:
        """Alert counts and delivery success rate for a user."""
        now = now or utcnow()
        by_type = self.alerts.count_by_type(user_id)
        counts = self.records.status_counts(user_id=user_id)
        attempts = counts.get(SENT, 0) + counts.get(FAILED, 0)
        success_rate = 100.0 if attempts == 0 else round(counts.get(SENT, 0) / attempts * 100, 1)

        return AlertStatistics(
            total=sum(t["total"] for t in by_type.values()),
            active=sum(t["active"] for t in by_type.values()),
            triggered=sum(t["triggered"] for t in by_type.values()),
            success_rate=success_rate,
            recent_24h=self.alerts.count_triggered_since(user_id, now - timedelta(hours=24)),
            by_type=by_type,
        )

    def notification_history(
        self,
        user_id: int,
        alert_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> HistoryPage:
        """Triggered alerts, most recent first."""
        page = max(1, page)
        limit = max(1, limit)
        items, total = self.alerts.triggered_history(
            user_id, alert_type, limit=limit, offset=(page - 1) * limit
        )
        return HistoryPage(items=items, page=page, limit=limit, total=total)
