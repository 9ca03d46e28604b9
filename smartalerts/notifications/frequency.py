"""
Per-user delivery cadence: immediate, daily digest or weekly digest.
"""

import logging
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from smartalerts.database.models import (
    DispatchRecord,
    NotificationPreference,
    QuietHours,
    TriggerEvent,
    User,
    utcnow,
)
from smartalerts.database.repository import (
    AlertRepository,
    DispatchRecordRepository,
    UserRepository,
)
from .dispatcher import DispatchJob, Dispatcher
from .preferences import PreferenceResolver, PreferenceStore, in_quiet_hours

logger = logging.getLogger(__name__)

DIGEST_WINDOWS = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}


class FrequencyAggregator:
    """
    Routes trigger events according to each user's cadence.

    The digest bucket is not kept in memory: a trigger is pending while the
    alert's notified_at is older than its triggered_at, so pending digests
    can always be rebuilt from the alert store after a restart.
    """

    def __init__(
        self,
        alerts: AlertRepository,
        users: UserRepository,
        records: DispatchRecordRepository,
        preferences: PreferenceStore,
        dispatcher: Dispatcher,
        resolver: Optional[PreferenceResolver] = None,
        category: str = "alerts",
    ):
        self.alerts = alerts
        self.users = users
        self.records = records
        self.preferences = preferences
        self.dispatcher = dispatcher
        self.resolver = resolver or PreferenceResolver()
        self.category = category

    def submit(
        self, events: list[TriggerEvent], now: Optional[datetime] = None
    ) -> list[DispatchRecord]:
        """
        Route freshly triggered events.

        Channels the resolver suppresses are recorded right away. Users on
        the immediate cadence get their remaining channels dispatched now;
        digest users keep the event pending until their window closes.
        Records are stamped with now, the tick time.

        Returns:
            Records appended while handling the events
        """
        by_user: dict[int, list[TriggerEvent]] = defaultdict(list)
        for event in events:
            by_user[event.alert.user_id].append(event)

        appended: list[DispatchRecord] = []
        jobs: list[DispatchJob] = []
        for user_id, user_events in by_user.items():
            try:
                user = self.user_for(user_id)
                preference = self.preferences.get(user_id)
                for event in user_events:
                    appended += self._route(user, preference, event, jobs, now)
            except Exception as e:
                logger.error(f"Failed to route events for user {user_id}: {e}")

        if jobs:
            appended += self._dispatch_and_mark(jobs, now)
        return appended

    def _route(
        self,
        user: User,
        preference: NotificationPreference,
        event: TriggerEvent,
        jobs: list[DispatchJob],
        now: Optional[datetime] = None,
    ) -> list[DispatchRecord]:
        resolution = self.resolver.resolve(
            preference,
            self.category,
            event.alert.notification_method,
            event.triggered_at,
        )
        recorded = self.dispatcher.record_suppressed(
            user.id, event, resolution.suppressed, at=now
        )

        if not resolution.allowed:
            logger.info(
                f"Alert {event.alert.id} trigger suppressed for user {user.id}: "
                f"{resolution.suppressed}"
            )
            self.alerts.mark_notified(event.alert.id, event.triggered_at)
        elif preference.frequency == "immediate":
            jobs.append(DispatchJob(user=user, channels=resolution.allowed, events=[event]))
        else:
            logger.debug(
                f"Alert {event.alert.id} held for {preference.frequency} digest"
            )
        return recorded

    def pending_digest(self, user_id: int) -> list[TriggerEvent]:
        """Rebuild the user's undelivered trigger events from the alert store."""
        return [
            TriggerEvent.for_alert(alert)
            for alert in self.alerts.pending_triggers(user_id)
        ]

    def digest_due(
        self,
        user_id: int,
        frequency: str,
        pending: list[TriggerEvent],
        now: datetime,
    ) -> bool:
        """
        Whether the user's digest window has elapsed.

        The window runs from the last digest sent, or from the start of the
        oldest pending trigger run when the user never received one.
        """
        window = DIGEST_WINDOWS.get(frequency)
        if window is None or not pending:
            return False
        anchor = self.records.last_digest_at(user_id)
        if anchor is None:
            anchor = min(
                event.alert.pending_since or event.triggered_at for event in pending
            )
        return now - anchor >= window

    def flush_due(self, now: Optional[datetime] = None) -> list[DispatchRecord]:
        """
        Deliver every pending trigger whose cadence allows it now.

        Digest users whose window elapsed get one digest per channel. Pending
        triggers of immediate users (left behind by a crash or a cadence
        change) are delivered right away. Nothing is sent during quiet hours;
        the flush is retried on a later tick.

        Returns:
            Records appended by the flush
        """
        now = now or utcnow()
        appended: list[DispatchRecord] = []
        jobs: list[DispatchJob] = []

        for user_id in self.alerts.users_with_pending_triggers():
            try:
                appended += self._collect(user_id, now, jobs)
            except Exception as e:
                logger.error(f"Failed to flush notifications for user {user_id}: {e}")

        if jobs:
            appended += self._dispatch_and_mark(jobs, now)
        return appended

    def _collect(
        self, user_id: int, now: datetime, jobs: list[DispatchJob]
    ) -> list[DispatchRecord]:
        preference = self.preferences.get(user_id)
        pending = self.pending_digest(user_id)
        if not pending:
            return []

        digest = preference.frequency in DIGEST_WINDOWS
        if digest and not self.digest_due(user_id, preference.frequency, pending, now):
            return []
        if in_quiet_hours(preference.quiet_hours, now):
            logger.debug(f"Deferring notifications for user {user_id}: quiet hours")
            return []

        user = self.user_for(user_id)
        kind = "digest" if digest else "immediate"
        recorded: list[DispatchRecord] = []
        by_channel: dict[str, list[TriggerEvent]] = defaultdict(list)

        for event in pending:
            handled = self.records.handled_channels(event.event_key)
            candidates = [c for c in event.alert.notification_method if c not in handled]
            resolution = self.resolver.resolve(preference, self.category, candidates, now)
            recorded += self.dispatcher.record_suppressed(
                user_id, event, resolution.suppressed, kind=kind, at=now
            )
            if not resolution.allowed:
                self.alerts.mark_notified(event.alert.id, event.triggered_at)
            for channel in resolution.allowed:
                by_channel[channel].append(event)

        for channel, events in by_channel.items():
            if digest:
                jobs.append(DispatchJob.digest(user, (channel,), events, preference.frequency))
            else:
                for event in events:
                    jobs.append(DispatchJob(user=user, channels=(channel,), events=[event]))
        return recorded

    def _dispatch_and_mark(
        self, jobs: list[DispatchJob], now: Optional[datetime] = None
    ) -> list[DispatchRecord]:
        records = self.dispatcher.dispatch(jobs, at=now)
        delivered = {}
        for job in jobs:
            for event in job.events:
                delivered[event.event_key] = event
        for event in delivered.values():
            # Mark against the trigger time so a newer trigger stays pending
            self.alerts.mark_notified(event.alert.id, event.triggered_at)
        return records

    def dispatch_test(self, event: TriggerEvent, now: datetime) -> list[DispatchRecord]:
        """
        Deliver a test notification right away.

        Cadence and quiet hours do not apply; channels the owner disabled
        are recorded as suppressed. The alert is not marked notified.
        """
        user_id = event.alert.user_id
        preference = replace(self.preferences.get(user_id), quiet_hours=QuietHours())
        resolution = self.resolver.resolve(
            preference, self.category, event.alert.notification_method, now
        )
        records = self.dispatcher.record_suppressed(
            user_id, event, resolution.suppressed, kind="test", at=now
        )
        if resolution.allowed:
            job = DispatchJob(
                user=self.user_for(user_id),
                channels=resolution.allowed,
                events=[event],
                kind="test",
            )
            records += self.dispatcher.dispatch([job], at=now)
        return records

    def user_for(self, user_id: int) -> User:
        return self.users.get_by_id(user_id) or User(id=user_id)
