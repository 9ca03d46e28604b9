"""
Notification preference resolution.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from smartalerts.database.models import (
    CHANNELS,
    SUPPRESSED_PREFERENCE,
    SUPPRESSED_QUIET_HOURS,
    NotificationPreference,
    QuietHours,
    as_utc,
)
from smartalerts.database.repository import PreferenceRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    """Partition of candidate channels into deliverable and suppressed."""

    allowed: tuple[str, ...] = ()
    suppressed: dict[str, str] = field(default_factory=dict)


def in_quiet_hours(quiet_hours: QuietHours, at: datetime) -> bool:
    """
    Whether a moment falls in the [start, end) quiet window.

    The window is read in the user's timezone and may wrap past midnight
    (22:00-08:00). Equal start and end make an empty window.
    """
    if not quiet_hours.enabled:
        return False
    local = as_utc(at).astimezone(quiet_hours.zone)
    minute = local.hour * 60 + local.minute
    start, end = quiet_hours.start_minutes, quiet_hours.end_minutes
    if start == end:
        return False
    if start < end:
        return start <= minute < end
    return minute >= start or minute < end


class PreferenceResolver:
    """Decides which channels may deliver a notification right now."""

    def resolve(
        self,
        preference: NotificationPreference,
        category: str,
        candidates: Iterable[str],
        at: datetime,
    ) -> Resolution:
        """
        Resolve the delivery channel set for one event.

        Pure: the same inputs always give the same partition.

        Args:
            preference: Preference snapshot of the alert owner
            category: Notification category ("alerts" for this engine)
            candidates: Channels the alert subscribes to
            at: Event timestamp

        Returns:
            Resolution with allowed channels and per-channel suppression status
        """
        ordered = [c for c in CHANNELS if c in set(candidates)]
        allowed = []
        suppressed = {}

        for channel in ordered:
            if preference.channel(channel).allows(category):
                allowed.append(channel)
            else:
                suppressed[channel] = SUPPRESSED_PREFERENCE

        if allowed and in_quiet_hours(preference.quiet_hours, at):
            for channel in allowed:
                suppressed[channel] = SUPPRESSED_QUIET_HOURS
            allowed = []

        return Resolution(allowed=tuple(allowed), suppressed=suppressed)


class PreferenceStore:
    """Hands out immutable preference snapshots and applies updates."""

    def __init__(self, repository: PreferenceRepository):
        self.repository = repository
        self._lock = threading.Lock()

    def get(self, user_id: int) -> NotificationPreference:
        """Current snapshot, defaults when the user never saved any."""
        return self.repository.get(user_id) or NotificationPreference()

    def has_saved(self, user_id: int) -> bool:
        return self.repository.get(user_id) is not None

    def update(self, user_id: int, changes: dict[str, Any]) -> NotificationPreference:
        """
        Apply a partial update and store the resulting snapshot.

        Raises:
            PreferenceValidationError: If the merged preferences are invalid
        """
        with self._lock:
            current = self.get(user_id)
            updated = current.with_changes(changes)
            self.repository.save(user_id, updated)
        logger.info(f"Notification preferences updated for user {user_id}")
        return updated
