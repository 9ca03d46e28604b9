"""
Dispatch of notifications to channel adapters.
"""

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from smartalerts.database.models import (
    FAILED,
    PENDING_RETRY,
    SENT,
    DispatchRecord,
    TriggerEvent,
    User,
)
from smartalerts.database.repository import DispatchRecordRepository
from smartalerts.notifiers.base import NotificationMessage, NotificationResult, Notifier

logger = logging.getLogger(__name__)


@dataclass
class DispatchJob:
    """Deliver one event (or a digest of events) to a user on some channels."""

    user: User
    channels: tuple[str, ...]
    events: list[TriggerEvent]
    kind: str = "immediate"  # "immediate", "digest", "test"
    period: Optional[str] = None
    digest_id: Optional[str] = None

    @classmethod
    def digest(
        cls,
        user: User,
        channels: tuple[str, ...],
        events: list[TriggerEvent],
        period: str,
    ) -> "DispatchJob":
        return cls(
            user=user,
            channels=channels,
            events=events,
            kind="digest",
            period=period,
            digest_id=uuid.uuid4().hex,
        )


@dataclass
class _Delivery:
    job: DispatchJob
    channel: str
    events: list[TriggerEvent]
    at: Optional[datetime] = None
    result: Optional[NotificationResult] = None
    attempts: int = 0
    records: list[DispatchRecord] = field(default_factory=list)


class Dispatcher:
    """
    Fans dispatch jobs out to channel adapters.

    Deliveries run concurrently on a bounded pool. Each adapter call has a
    timeout; failures are retried with exponential backoff and every attempt
    leaves a DispatchRecord: pending_retry for a failed attempt that will be
    retried, then exactly one final sent or failed record per
    (event, channel).
    """

    def __init__(
        self,
        adapters: dict[str, Notifier],
        records: DispatchRecordRepository,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        backoff_factor: float = 2.0,
        timeout_seconds: float = 10.0,
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.adapters = adapters
        self.records = records
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.backoff_factor = backoff_factor
        self.timeout_seconds = timeout_seconds
        self.sleep = sleep
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="dispatch"
        )
        # Adapter calls run here so a hung call can be abandoned on timeout
        self._calls = ThreadPoolExecutor(
            max_workers=max_workers * 2, thread_name_prefix="adapter"
        )

    def dispatch(
        self, jobs: list[DispatchJob], at: Optional[datetime] = None
    ) -> list[DispatchRecord]:
        """
        Deliver jobs and record the outcome of every (event, channel).

        Pairs that already hold a final record are skipped, so re-running a
        job after a crash does not deliver twice. Records carry the
        given tick time, or the time of writing when none is given.

        Returns:
            Final records appended by this call
        """
        deliveries = []
        for job in jobs:
            for channel in job.channels:
                events = [
                    event
                    for event in job.events
                    if channel not in self.records.handled_channels(event.event_key)
                ]
                if events:
                    deliveries.append(
                        _Delivery(job=job, channel=channel, events=events, at=at)
                    )
                else:
                    logger.debug(f"Skipping {channel} for user {job.user.id}: already handled")

        futures = [self._pool.submit(self._deliver, delivery) for delivery in deliveries]

        final: list[DispatchRecord] = []
        for delivery, future in zip(deliveries, futures):
            try:
                future.result()
            except Exception as e:
                # _deliver only raises on store failure; keep the others going
                logger.error(
                    f"Dispatch of {delivery.channel} to user {delivery.job.user.id} "
                    f"failed unexpectedly: {e}"
                )
                continue
            final.extend(delivery.records)
        return final

    def _deliver(self, delivery: _Delivery) -> None:
        job, channel = delivery.job, delivery.channel
        adapter = self.adapters.get(channel)
        message = NotificationMessage(
            recipient=job.user,
            events=delivery.events,
            kind={"digest": "digest", "test": "test"}.get(job.kind, "alert"),
            period=job.period,
        )

        result = NotificationResult(
            success=False, channel=channel, error=f"No adapter for channel {channel}"
        )
        attempts = 0
        while adapter is not None:
            attempts += 1
            result = self._call(adapter, message)
            if result.success:
                break
            if attempts > self.max_retries:
                break
            logger.warning(
                f"{channel} delivery to user {job.user.id} failed "
                f"(attempt {attempts}): {result.error}"
            )
            self.records.append_many(
                self._records(delivery, PENDING_RETRY, result.error, attempts, False)
            )
            self.sleep(self.backoff_seconds * self.backoff_factor ** (attempts - 1))

        delivery.result = result
        delivery.attempts = attempts
        status = SENT if result.success else FAILED
        if not result.success:
            logger.error(
                f"{channel} delivery to user {job.user.id} failed after "
                f"{attempts} attempt(s): {result.error}"
            )
        delivery.records = self.records.append_many(
            self._records(delivery, status, result.error, attempts, result.simulated)
        )

    def record_suppressed(
        self,
        user_id: int,
        event: TriggerEvent,
        suppressed: dict[str, str],
        kind: str = "immediate",
        at: Optional[datetime] = None,
    ) -> list[DispatchRecord]:
        """Record channels the preference resolver held back for an event."""
        handled = self.records.handled_channels(event.event_key)
        records = [
            DispatchRecord(
                event_key=event.event_key,
                alert_id=event.alert.id,
                user_id=user_id,
                channel=channel,
                status=status,
                kind=kind,
                created_at=at,
            )
            for channel, status in suppressed.items()
            if channel not in handled
        ]
        if not records:
            return []
        return self.records.append_many(records)

    def _call(self, adapter: Notifier, message: NotificationMessage) -> NotificationResult:
        """Run one adapter call with a timeout; exceptions become failures."""
        future = self._calls.submit(adapter.send, message)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            if not future.cancel():
                logger.warning(
                    f"{adapter.channel} call timed out; its adapter worker stays busy "
                    "until the call returns"
                )
            return NotificationResult(
                success=False,
                channel=adapter.channel,
                error=f"Timed out after {self.timeout_seconds}s",
            )
        except Exception as e:
            return NotificationResult(success=False, channel=adapter.channel, error=str(e))

    def _records(
        self,
        delivery: _Delivery,
        status: str,
        error: Optional[str],
        attempts: int,
        simulated: bool,
    ) -> list[DispatchRecord]:
        return [
            DispatchRecord(
                event_key=event.event_key,
                alert_id=event.alert.id,
                user_id=delivery.job.user.id,
                channel=delivery.channel,
                status=status,
                kind=delivery.job.kind,
                error=None if status == SENT else error,
                attempts=attempts,
                simulated=simulated,
                digest_id=delivery.job.digest_id,
                created_at=delivery.at,
            )
            for event in delivery.events
        ]

    def close(self) -> None:
        """Wait for in-flight deliveries and release the pools."""
        self._pool.shutdown(wait=True)
        self._calls.shutdown(wait=False, cancel_futures=True)
