"""
Dispatcher tests.
Tests for fan-out, retries, timeouts and dispatch records.
"""

import logging
import threading
from datetime import datetime, timezone

import pytest

from smartalerts.database.models import (
    FAILED,
    PENDING_RETRY,
    SENT,
    SUPPRESSED_PREFERENCE,
    Alert,
    TriggerEvent,
)
from smartalerts.database.repository import DispatchRecordRepository
from smartalerts.notifications.dispatcher import DispatchJob, Dispatcher
from smartalerts.notifiers.base import Notifier, NotificationResult
from smartalerts.notifiers.stub import PushNotifier


def make_event(alert_id: int = 1, minute: int = 0) -> TriggerEvent:
    alert = Alert(
        id=alert_id,
        user_id=1,
        type="price",
        cryptocurrency="bitcoin",
        condition="above",
        threshold=50000,
        is_triggered=True,
        triggered_at=datetime(2026, 3, 2, 12, minute, tzinfo=timezone.utc),
        message="BITCOIN price is above $50,000 (current: $51,000)",
    )
    return TriggerEvent.for_alert(alert)


class ExplodingNotifier(Notifier):
    channel = "email"

    def send(self, message):
        raise ConnectionError("connection reset")


class HangingNotifier(Notifier):
    channel = "email"

    def __init__(self):
        self.release = threading.Event()

    def send(self, message):
        self.release.wait(5)
        return NotificationResult(success=True, channel=self.channel)


class TestDispatcher:
    """Test delivering jobs."""

    @pytest.fixture
    def records(self, db):
        return DispatchRecordRepository(db)

    @pytest.fixture
    def sleeps(self):
        return []

    def make_dispatcher(self, records, sleeps, **adapters):
        return Dispatcher(
            adapters=adapters,
            records=records,
            max_retries=2,
            backoff_seconds=1.0,
            backoff_factor=2.0,
            timeout_seconds=5.0,
            max_workers=2,
            sleep=sleeps.append,
        )

    def test_successful_delivery(self, records, sleeps, user, make_notifier):
        """Should record one sent record per channel."""
        email = make_notifier()
        dispatcher = self.make_dispatcher(records, sleeps, email=email, push=PushNotifier())
        event = make_event()

        final = dispatcher.dispatch(
            [DispatchJob(user=user, channels=("email", "push"), events=[event])]
        )
        dispatcher.close()

        assert sorted((r.channel, r.status) for r in final) == [("email", SENT), ("push", SENT)]
        assert len(email.messages) == 1
        assert email.messages[0].recipient.email == "trader@example.com"
        push_record = next(r for r in final if r.channel == "push")
        assert push_record.simulated is True

    def test_retries_with_backoff(self, records, sleeps, user, make_notifier):
        """Should retry failures with exponential backoff before succeeding."""
        email = make_notifier(failures=2)
        dispatcher = self.make_dispatcher(records, sleeps, email=email)
        event = make_event()

        final = dispatcher.dispatch(
            [DispatchJob(user=user, channels=("email",), events=[event])]
        )
        dispatcher.close()

        assert [r.status for r in final] == [SENT]
        assert final[0].attempts == 3
        assert sleeps == [1.0, 2.0]
        statuses = [r.status for r in records.for_event(event.event_key)]
        assert statuses == [PENDING_RETRY, PENDING_RETRY, SENT]

    def test_gives_up_after_max_retries(self, records, sleeps, user, make_notifier):
        """Should record a final failure with the last error."""
        email = make_notifier(failures=10, error="SMTP down")
        dispatcher = self.make_dispatcher(records, sleeps, email=email)
        event = make_event()

        final = dispatcher.dispatch(
            [DispatchJob(user=user, channels=("email",), events=[event])]
        )
        dispatcher.close()

        assert len(email.messages) == 3
        assert [r.status for r in final] == [FAILED]
        assert final[0].error == "SMTP down"
        assert records.handled_channels(event.event_key) == {"email"}

    def test_adapter_exception_is_a_failure(self, records, sleeps, user):
        """Should turn adapter exceptions into failed attempts."""
        dispatcher = self.make_dispatcher(records, sleeps, email=ExplodingNotifier())
        final = dispatcher.dispatch(
            [DispatchJob(user=user, channels=("email",), events=[make_event()])]
        )
        dispatcher.close()

        assert [r.status for r in final] == [FAILED]
        assert "connection reset" in final[0].error

    def test_adapter_timeout(self, records, sleeps, user):
        """Should abandon an adapter call that exceeds the timeout."""
        hanging = HangingNotifier()
        dispatcher = Dispatcher(
            adapters={"email": hanging},
            records=records,
            max_retries=0,
            timeout_seconds=0.05,
            sleep=sleeps.append,
        )
        try:
            final = dispatcher.dispatch(
                [DispatchJob(user=user, channels=("email",), events=[make_event()])]
            )
        finally:
            hanging.release.set()
            dispatcher.close()

        assert [r.status for r in final] == [FAILED]
        assert "Timed out" in final[0].error

    def test_missing_adapter_fails(self, records, sleeps, user):
        """Should record a failure for channels without an adapter."""
        dispatcher = self.make_dispatcher(records, sleeps)
        final = dispatcher.dispatch(
            [DispatchJob(user=user, channels=("sms",), events=[make_event()])]
        )
        dispatcher.close()

        assert [r.status for r in final] == [FAILED]
        assert final[0].attempts == 0

    def test_handled_channels_are_skipped(self, records, sleeps, user, make_notifier):
        """Should not deliver twice when a job is re-run."""
        email = make_notifier()
        dispatcher = self.make_dispatcher(records, sleeps, email=email)
        job = DispatchJob(user=user, channels=("email",), events=[make_event()])

        dispatcher.dispatch([job])
        second = dispatcher.dispatch([job])
        dispatcher.close()

        assert second == []
        assert len(email.messages) == 1

    def test_digest_records_share_digest_id(self, records, sleeps, user, make_notifier):
        """Should deliver one digest message and record every event in it."""
        email = make_notifier()
        dispatcher = self.make_dispatcher(records, sleeps, email=email)
        events = [make_event(1), make_event(2, minute=5)]

        final = dispatcher.dispatch([DispatchJob.digest(user, ("email",), events, "daily")])
        dispatcher.close()

        assert len(email.messages) == 1
        assert email.messages[0].is_digest is True
        assert email.messages[0].headline == "Your daily alert digest: 2 alerts"
        assert len(final) == 2
        assert {r.kind for r in final} == {"digest"}
        assert len({r.digest_id for r in final}) == 1

    def test_record_suppressed(self, records, sleeps, user):
        """Should append suppression records once per channel."""
        dispatcher = self.make_dispatcher(records, sleeps)
        event = make_event()

        first = dispatcher.record_suppressed(user.id, event, {"sms": SUPPRESSED_PREFERENCE})
        second = dispatcher.record_suppressed(user.id, event, {"sms": SUPPRESSED_PREFERENCE})
        dispatcher.close()

        assert [r.status for r in first] == [SUPPRESSED_PREFERENCE]
        assert second == []

    def test_records_carry_tick_time(self, records, sleeps, user, make_notifier):
        """Should stamp records with the time the caller dispatched at."""
        dispatcher = self.make_dispatcher(records, sleeps, email=make_notifier(failures=1))
        at = datetime(2026, 3, 3, 12, 0, tzinfo=timezone.utc)

        dispatcher.dispatch(
            [DispatchJob(user=user, channels=("email",), events=[make_event()])], at=at
        )
        suppressed = dispatcher.record_suppressed(
            user.id, make_event(2), {"sms": SUPPRESSED_PREFERENCE}, at=at
        )
        dispatcher.close()

        stamps = {r.created_at for r in records.for_event(make_event().event_key)}
        assert stamps == {at}
        assert suppressed[0].created_at == at

    def test_hung_adapter_is_logged(self, records, sleeps, user, caplog):
        """Should log that a timed-out adapter call still holds its worker."""
        hanging = HangingNotifier()
        dispatcher = Dispatcher(
            adapters={"email": hanging},
            records=records,
            max_retries=0,
            timeout_seconds=0.05,
            sleep=sleeps.append,
        )
        try:
            with caplog.at_level(logging.WARNING, logger="smartalerts.notifications.dispatcher"):
                dispatcher.dispatch(
                    [DispatchJob(user=user, channels=("email",), events=[make_event()])]
                )
        finally:
            hanging.release.set()
            dispatcher.close()

        assert "adapter worker stays busy" in caplog.text
