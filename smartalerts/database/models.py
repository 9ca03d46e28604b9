"""
Data models for the alert engine.
"""

import re
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from smartalerts.errors import PreferenceValidationError

CHANNELS = ("email", "push", "sms")
CATEGORIES = ("alerts", "marketUpdates", "security", "newsletter")
FREQUENCIES = ("immediate", "daily", "weekly")

# Dispatch record statuses
SENT = "sent"
SUPPRESSED_QUIET_HOURS = "suppressed_quiet_hours"
SUPPRESSED_PREFERENCE = "suppressed_preference"
FAILED = "failed"
PENDING_RETRY = "pending_retry"
DISPATCH_STATUSES = (
    SENT,
    SUPPRESSED_QUIET_HOURS,
    SUPPRESSED_PREFERENCE,
    FAILED,
    PENDING_RETRY,
)

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    """Identity projection used to address notification channels."""

    id: Optional[int] = None
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Alert:
    """User-owned rule pairing a market metric, a condition and a threshold."""

    user_id: int
    type: str  # "price", "sentiment", "risk", "volume", "technical"
    cryptocurrency: str
    condition: str  # "above", "below", "crosses_up", "crosses_down", "change_percent"
    threshold: float
    notification_method: list[str] = field(default_factory=lambda: ["email"])
    metadata: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    is_triggered: bool = False
    current_value: Optional[float] = None
    previous_value: Optional[float] = None
    last_checked: Optional[datetime] = None
    triggered_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    # Start of the current run of undelivered triggers
    pending_since: Optional[datetime] = None
    message: Optional[str] = None
    id: Optional[int] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def metric(self) -> str:
        """Metric key used to fetch market values for this alert."""
        if self.type == "technical":
            indicator = self.metadata.get("technicalIndicator", "RSI")
            return f"technical:{indicator}"
        return self.type

    @property
    def has_pending_trigger(self) -> bool:
        """True when the latest trigger has not been handed off yet."""
        if not self.is_triggered or self.triggered_at is None:
            return False
        return self.notified_at is None or self.notified_at < self.triggered_at


@dataclass(frozen=True)
class TriggerEvent:
    """One qualifying evaluation of an alert (or a manual test fire)."""

    alert: Alert
    event_key: str
    triggered_at: datetime
    message: str
    kind: str = "immediate"  # "immediate", "test"

    @classmethod
    def for_alert(cls, alert: Alert, kind: str = "immediate") -> "TriggerEvent":
        triggered_at = alert.triggered_at or utcnow()
        if kind == "test":
            key = f"{alert.id}:test:{triggered_at.isoformat()}"
        else:
            key = f"{alert.id}:{triggered_at.isoformat()}"
        return cls(
            alert=alert,
            event_key=key,
            triggered_at=triggered_at,
            message=alert.message or "",
            kind=kind,
        )


@dataclass(frozen=True)
class DispatchRecord:
    """Immutable record of one delivery attempt on one channel."""

    event_key: str
    alert_id: int
    user_id: int
    channel: str
    status: str
    kind: str = "immediate"  # "immediate", "digest", "test"
    error: Optional[str] = None
    attempts: int = 0
    simulated: bool = False
    digest_id: Optional[str] = None
    corrects_id: Optional[int] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class AuditEntry:
    """Append-only audit log entry."""

    actor_id: Optional[int]
    action: str
    target_type: str
    target_id: Optional[int]
    description: str
    details: dict[str, Any] = field(default_factory=dict)
    severity: str = "medium"
    category: str = "system"
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class ChannelPreference:
    """Per-method enablement and category subscriptions."""

    enabled: bool = False
    alerts: bool = False
    market_updates: bool = False
    security: bool = False
    newsletter: bool = False

    def allows(self, category: str) -> bool:
        """Whether this channel delivers notifications of a category."""
        if category not in CATEGORIES:
            raise PreferenceValidationError(f"Unknown category: {category}")
        flag = "market_updates" if category == "marketUpdates" else category
        return self.enabled and getattr(self, flag)

    def to_dict(self) -> dict[str, bool]:
        return {
            "enabled": self.enabled,
            "alerts": self.alerts,
            "marketUpdates": self.market_updates,
            "security": self.security,
            "newsletter": self.newsletter,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChannelPreference":
        return cls(
            enabled=bool(data.get("enabled", False)),
            alerts=bool(data.get("alerts", False)),
            market_updates=bool(data.get("marketUpdates", False)),
            security=bool(data.get("security", False)),
            newsletter=bool(data.get("newsletter", False)),
        )


@dataclass(frozen=True)
class QuietHours:
    """Do-not-disturb window in the user's local wall-clock time."""

    enabled: bool = False
    start: str = "22:00"
    end: str = "08:00"
    timezone: str = "UTC"

    @property
    def start_minutes(self) -> int:
        hours, minutes = self.start.split(":")
        return int(hours) * 60 + int(minutes)

    @property
    def end_minutes(self) -> int:
        hours, minutes = self.end.split(":")
        return int(hours) * 60 + int(minutes)

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class NotificationPreference:
    """
    Immutable snapshot of a user's notification settings.

    Updates go through with_changes(), which returns a new snapshot so an
    in-flight dispatch keeps using the one it was handed.
    """

    email: ChannelPreference = field(
        default_factory=lambda: ChannelPreference(
            enabled=True, alerts=True, market_updates=True, security=True
        )
    )
    push: ChannelPreference = field(
        default_factory=lambda: ChannelPreference(
            enabled=False, alerts=True, security=True
        )
    )
    sms: ChannelPreference = field(default_factory=ChannelPreference)
    frequency: str = "immediate"
    quiet_hours: QuietHours = field(default_factory=QuietHours)

    def channel(self, name: str) -> ChannelPreference:
        if name not in CHANNELS:
            raise PreferenceValidationError(f"Unknown channel: {name}")
        return getattr(self, name)

    def to_dict(self) -> dict[str, Any]:
        """Wire form with camelCase keys and the frequency flag triple."""
        return {
            "email": self.email.to_dict(),
            "push": self.push.to_dict(),
            "sms": self.sms.to_dict(),
            "frequency": {name: name == self.frequency for name in FREQUENCIES},
            "quietHours": asdict(self.quiet_hours),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotificationPreference":
        """
        Build a snapshot from the wire form.

        Raises:
            PreferenceValidationError: If frequency flags, quiet hours or
                timezone are invalid
        """
        default = cls()
        channels = {}
        for name in CHANNELS:
            raw = data.get(name)
            if raw is None:
                channels[name] = getattr(default, name)
            elif isinstance(raw, dict):
                channels[name] = ChannelPreference.from_dict(raw)
            else:
                raise PreferenceValidationError(f"Invalid {name} preferences")

        frequency = _parse_frequency(data.get("frequency", default.frequency))

        quiet = data.get("quietHours") or {}
        quiet_hours = QuietHours(
            enabled=bool(quiet.get("enabled", False)),
            start=str(quiet.get("start", "22:00")),
            end=str(quiet.get("end", "08:00")),
            timezone=str(quiet.get("timezone", "UTC")),
        )
        _validate_quiet_hours(quiet_hours)

        return cls(
            email=channels["email"],
            push=channels["push"],
            sms=channels["sms"],
            frequency=frequency,
            quiet_hours=quiet_hours,
        )

    def with_changes(self, changes: dict[str, Any]) -> "NotificationPreference":
        """Return a new snapshot with a partial wire-form update merged in."""
        merged = self.to_dict()
        for key, value in changes.items():
            if key == "frequency":
                merged[key] = value
            elif isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        return NotificationPreference.from_dict(merged)

    def with_frequency(self, frequency: str) -> "NotificationPreference":
        return replace(self, frequency=_parse_frequency(frequency))


def _parse_frequency(value: Any) -> str:
    """Accept either a cadence name or the exclusive boolean triple."""
    if isinstance(value, str):
        if value not in FREQUENCIES:
            raise PreferenceValidationError(f"Unknown frequency: {value}")
        return value
    if isinstance(value, dict):
        chosen = [name for name in FREQUENCIES if value.get(name)]
        if len(chosen) != 1:
            raise PreferenceValidationError(
                "Exactly one of immediate, daily, weekly must be selected"
            )
        return chosen[0]
    raise PreferenceValidationError(f"Invalid frequency: {value!r}")


def _validate_quiet_hours(quiet_hours: QuietHours) -> None:
    for label, value in (("start", quiet_hours.start), ("end", quiet_hours.end)):
        if not _HHMM.match(value):
            raise PreferenceValidationError(
                f"Quiet hours {label} must be HH:MM, got {value!r}"
            )
    try:
        ZoneInfo(quiet_hours.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise PreferenceValidationError(
            f"Unknown timezone: {quiet_hours.timezone}"
        ) from e
