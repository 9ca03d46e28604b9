"""
Data model tests.
"""

from dataclasses import FrozenInstanceError
from datetime import datetime, timezone

import pytest

from smartalerts.database.models import (
    Alert,
    ChannelPreference,
    DispatchRecord,
    NotificationPreference,
    QuietHours,
    TriggerEvent,
    as_utc,
)
from smartalerts.errors import PreferenceValidationError


class TestAlertModel:
    """Test Alert model."""

    def test_create_alert_defaults(self):
        """Should create an active, untriggered alert subscribed to email."""
        alert = Alert(
            user_id=1,
            type="price",
            cryptocurrency="bitcoin",
            condition="above",
            threshold=50000,
        )
        assert alert.is_active is True
        assert alert.is_triggered is False
        assert alert.notification_method == ["email"]
        assert alert.version == 0

    def test_metric_for_technical_alert(self):
        """Should key technical alerts by indicator."""
        alert = Alert(
            user_id=1,
            type="technical",
            cryptocurrency="bitcoin",
            condition="below",
            threshold=30,
            metadata={"technicalIndicator": "MACD"},
        )
        assert alert.metric == "technical:MACD"

    def test_metric_for_market_alert(self):
        """Should key other alerts by type."""
        alert = Alert(
            user_id=1, type="volume", cryptocurrency="bitcoin", condition="above", threshold=1
        )
        assert alert.metric == "volume"

    def test_pending_trigger(self):
        """Should be pending until notified at or after the trigger time."""
        triggered_at = datetime(2026, 3, 2, 12, tzinfo=timezone.utc)
        alert = Alert(
            user_id=1,
            type="price",
            cryptocurrency="bitcoin",
            condition="above",
            threshold=1,
            is_triggered=True,
            triggered_at=triggered_at,
        )
        assert alert.has_pending_trigger is True

        alert.notified_at = triggered_at
        assert alert.has_pending_trigger is False


class TestTriggerEvent:
    """Test trigger event keys."""

    @pytest.fixture
    def alert(self):
        return Alert(
            id=7,
            user_id=1,
            type="price",
            cryptocurrency="bitcoin",
            condition="above",
            threshold=1,
            is_triggered=True,
            triggered_at=datetime(2026, 3, 2, 12, tzinfo=timezone.utc),
            message="BITCOIN price is above $1",
        )

    def test_event_key_is_stable(self, alert):
        """Should derive the same key for the same trigger."""
        assert TriggerEvent.for_alert(alert).event_key == TriggerEvent.for_alert(alert).event_key
        assert TriggerEvent.for_alert(alert).event_key == "7:2026-03-02T12:00:00+00:00"

    def test_test_events_have_distinct_keys(self, alert):
        """Should tag test fires in the key."""
        event = TriggerEvent.for_alert(alert, kind="test")
        assert event.kind == "test"
        assert ":test:" in event.event_key
        assert event.message == "BITCOIN price is above $1"


class TestDispatchRecord:
    """Test DispatchRecord immutability."""

    def test_records_are_frozen(self):
        """Should not allow mutating a record."""
        record = DispatchRecord(
            event_key="1:x", alert_id=1, user_id=1, channel="email", status="sent"
        )
        with pytest.raises(FrozenInstanceError):
            record.status = "failed"


class TestNotificationPreference:
    """Test preference snapshots."""

    def test_defaults(self):
        """Should default to email alerts delivered immediately."""
        preference = NotificationPreference()
        assert preference.email.allows("alerts") is True
        assert preference.push.allows("alerts") is False
        assert preference.sms.allows("alerts") is False
        assert preference.frequency == "immediate"
        assert preference.quiet_hours.enabled is False

    def test_channel_needs_enabled_and_category(self):
        """Should deliver only when the method and the category are both on."""
        assert ChannelPreference(enabled=True, alerts=False).allows("alerts") is False
        assert ChannelPreference(enabled=False, alerts=True).allows("alerts") is False
        assert ChannelPreference(enabled=True, alerts=True).allows("alerts") is True

    def test_unknown_category(self):
        """Should reject categories outside the schema."""
        with pytest.raises(PreferenceValidationError):
            ChannelPreference().allows("promotions")

    def test_wire_round_trip(self):
        """Should read back its own wire form."""
        preference = NotificationPreference(frequency="weekly")
        data = preference.to_dict()
        assert data["frequency"] == {"immediate": False, "daily": False, "weekly": True}
        assert data["email"]["marketUpdates"] is True
        assert NotificationPreference.from_dict(data) == preference

    def test_with_changes_is_copy_on_write(self):
        """Should return a new snapshot and leave the original untouched."""
        original = NotificationPreference()
        updated = original.with_changes(
            {"email": {"enabled": False}, "quietHours": {"enabled": True}}
        )
        assert original.email.enabled is True
        assert updated.email.enabled is False
        assert updated.email.alerts is True
        assert updated.quiet_hours.enabled is True
        assert updated.quiet_hours.start == "22:00"

    def test_snapshot_is_frozen(self):
        """Should not allow in-place mutation."""
        with pytest.raises(FrozenInstanceError):
            NotificationPreference().frequency = "daily"

    @pytest.mark.parametrize(
        "frequency",
        [
            {"immediate": True, "daily": True, "weekly": False},
            {"immediate": False, "daily": False, "weekly": False},
            "hourly",
        ],
    )
    def test_frequency_must_be_exactly_one(self, frequency):
        """Should reject anything but a single cadence."""
        with pytest.raises(PreferenceValidationError):
            NotificationPreference().with_changes({"frequency": frequency})

    def test_frequency_by_name(self):
        """Should accept a cadence name."""
        assert NotificationPreference().with_frequency("daily").frequency == "daily"

    @pytest.mark.parametrize("start", ["24:00", "7:00", "noon"])
    def test_rejects_bad_quiet_hours(self, start):
        """Should require HH:MM quiet hours."""
        with pytest.raises(PreferenceValidationError):
            NotificationPreference().with_changes({"quietHours": {"start": start}})

    def test_rejects_unknown_timezone(self):
        """Should require a known IANA timezone."""
        with pytest.raises(PreferenceValidationError, match="timezone"):
            NotificationPreference().with_changes({"quietHours": {"timezone": "Mars/Olympus"}})

    def test_quiet_hours_minutes(self):
        """Should convert HH:MM to minutes after midnight."""
        quiet = QuietHours(start="22:30", end="07:15")
        assert quiet.start_minutes == 22 * 60 + 30
        assert quiet.end_minutes == 7 * 60 + 15


def test_as_utc_treats_naive_as_utc():
    """Should attach UTC to naive datetimes."""
    assert as_utc(datetime(2026, 1, 1)).tzinfo == timezone.utc
