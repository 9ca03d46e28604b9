"""
Preference resolution tests.
Tests for channel filtering, quiet hours and snapshot updates.
"""

from datetime import datetime, timezone

import pytest

from smartalerts.database.models import (
    SUPPRESSED_PREFERENCE,
    SUPPRESSED_QUIET_HOURS,
    NotificationPreference,
    QuietHours,
)
from smartalerts.database.repository import PreferenceRepository
from smartalerts.errors import PreferenceValidationError
from smartalerts.notifications.preferences import (
    PreferenceResolver,
    PreferenceStore,
    in_quiet_hours,
)


def utc(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute, tzinfo=timezone.utc)


class TestQuietHours:
    """Test the quiet window check."""

    @pytest.fixture
    def overnight(self):
        return QuietHours(enabled=True, start="22:00", end="08:00")

    @pytest.mark.parametrize(
        "hour,minute,expected",
        [
            (23, 0, True),
            (22, 0, True),
            (2, 30, True),
            (7, 59, True),
            (8, 0, False),
            (12, 0, False),
            (21, 59, False),
        ],
    )
    def test_window_wraps_midnight(self, overnight, hour, minute, expected):
        """Should treat 22:00-08:00 as a window across midnight."""
        assert in_quiet_hours(overnight, utc(hour, minute)) is expected

    def test_daytime_window(self):
        """Should handle windows that do not wrap."""
        quiet = QuietHours(enabled=True, start="12:00", end="14:00")
        assert in_quiet_hours(quiet, utc(13)) is True
        assert in_quiet_hours(quiet, utc(14)) is False

    def test_equal_start_and_end_is_empty(self):
        """Should never be quiet when start equals end."""
        quiet = QuietHours(enabled=True, start="09:00", end="09:00")
        assert in_quiet_hours(quiet, utc(9)) is False

    def test_disabled_is_never_quiet(self):
        """Should ignore the window when disabled."""
        assert in_quiet_hours(QuietHours(enabled=False), utc(23)) is False

    def test_uses_user_timezone(self):
        """Should read the window in the user's local time."""
        quiet = QuietHours(enabled=True, start="22:00", end="08:00", timezone="America/New_York")
        # 03:00 UTC is 22:00 in New York (EST)
        assert in_quiet_hours(quiet, utc(3)) is True
        # 23:00 UTC is 18:00 in New York
        assert in_quiet_hours(quiet, utc(23)) is False


class TestPreferenceResolver:
    """Test channel resolution."""

    @pytest.fixture
    def resolver(self):
        return PreferenceResolver()

    def test_default_allows_email_only(self, resolver):
        """Should suppress push and sms under default preferences."""
        resolution = resolver.resolve(
            NotificationPreference(), "alerts", ["sms", "email", "push"], utc(12)
        )
        assert resolution.allowed == ("email",)
        assert resolution.suppressed == {
            "push": SUPPRESSED_PREFERENCE,
            "sms": SUPPRESSED_PREFERENCE,
        }

    def test_disabled_email_is_suppressed(self, resolver):
        """Should suppress email when the method is turned off."""
        preference = NotificationPreference().with_changes({"email": {"enabled": False}})
        resolution = resolver.resolve(preference, "alerts", ["email"], utc(12))
        assert resolution.allowed == ()
        assert resolution.suppressed == {"email": SUPPRESSED_PREFERENCE}

    def test_quiet_hours_suppress_allowed_channels(self, resolver):
        """Should mark enabled channels as quiet-hours suppressed."""
        preference = NotificationPreference().with_changes(
            {"quietHours": {"enabled": True}, "push": {"enabled": True}}
        )
        resolution = resolver.resolve(preference, "alerts", ["email", "push", "sms"], utc(23))
        assert resolution.allowed == ()
        assert resolution.suppressed == {
            "email": SUPPRESSED_QUIET_HOURS,
            "push": SUPPRESSED_QUIET_HOURS,
            "sms": SUPPRESSED_PREFERENCE,
        }

    def test_only_candidates_are_considered(self, resolver):
        """Should not report channels the alert does not use."""
        resolution = resolver.resolve(NotificationPreference(), "alerts", ["email"], utc(12))
        assert resolution.suppressed == {}

    def test_resolution_is_pure(self, resolver):
        """Should give the same answer for the same inputs."""
        preference = NotificationPreference()
        first = resolver.resolve(preference, "alerts", ["email", "sms"], utc(12))
        second = resolver.resolve(preference, "alerts", ["email", "sms"], utc(12))
        assert first == second


class TestPreferenceStore:
    """Test preference snapshots in the store."""

    @pytest.fixture
    def store(self, db):
        return PreferenceStore(PreferenceRepository(db))

    def test_defaults_when_never_saved(self, store, user):
        """Should return defaults for users without saved preferences."""
        assert store.get(user.id) == NotificationPreference()
        assert store.has_saved(user.id) is False

    def test_update_is_idempotent(self, store, user):
        """Should end in the same state when an update is applied twice."""
        changes = {"frequency": {"immediate": False, "daily": True, "weekly": False}}
        first = store.update(user.id, changes)
        second = store.update(user.id, changes)
        assert first == second
        assert store.get(user.id).frequency == "daily"

    def test_invalid_update_keeps_previous(self, store, user):
        """Should leave stored preferences untouched on validation failure."""
        store.update(user.id, {"sms": {"enabled": True, "alerts": True}})
        with pytest.raises(PreferenceValidationError):
            store.update(user.id, {"quietHours": {"end": "25:00"}})
        assert store.get(user.id).sms.enabled is True
        assert store.get(user.id).quiet_hours.end == "08:00"

    def test_held_snapshot_is_unchanged(self, store, user):
        """Should not change a snapshot already handed out."""
        snapshot = store.get(user.id)
        store.update(user.id, {"email": {"enabled": False}})
        assert snapshot.email.enabled is True
