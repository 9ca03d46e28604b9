"""
Periodic evaluation of active alerts.
"""

import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterator, Optional

from smartalerts.audit import ALERT_TEST_FIRED, AuditSink, LoggingAuditSink
from smartalerts.data.fetcher import MarketSnapshotProvider
from smartalerts.database.models import (
    Alert,
    DispatchRecord,
    TriggerEvent,
    utcnow,
)
from smartalerts.database.repository import AlertRepository
from smartalerts.errors import (
    AlertNotFoundError,
    ConcurrentModificationError,
    StoreUnavailableError,
)
from smartalerts.notifications.frequency import FrequencyAggregator
from smartalerts.rules.engine import RuleEngine

logger = logging.getLogger(__name__)


class AlertLocks:
    """Registry of per-alert locks shared by the scheduler and the service."""

    def __init__(self):
        self._locks: dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, alert_id: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(alert_id, threading.Lock())
        with lock:
            yield

    def discard(self, alert_id: int) -> None:
        with self._guard:
            self._locks.pop(alert_id, None)


@dataclass
class TickResult:
    """Outcome of one evaluation tick."""

    sequence: int
    started_at: datetime
    evaluated: int = 0
    triggered: int = 0
    fetch_failures: int = 0
    conflicts: int = 0
    errors: int = 0
    skipped: bool = False
    aborted: bool = False
    records: list[DispatchRecord] = field(default_factory=list)


class EvaluationScheduler:
    """
    Drives evaluation ticks on a fixed interval.

    start() runs ticks on a background thread until stop(); tests call
    tick() directly. Ticks never overlap: a tick requested while another is
    still running is skipped.
    """

    def __init__(
        self,
        alerts: AlertRepository,
        provider: MarketSnapshotProvider,
        aggregator: FrequencyAggregator,
        engine: Optional[RuleEngine] = None,
        audit: Optional[AuditSink] = None,
        locks: Optional[AlertLocks] = None,
        interval_seconds: float = 60,
        max_workers: int = 8,
        fetch_timeout: float = 15.0,
        tick_timeout: float = 45.0,
    ):
        """
        Initialize scheduler.

        Args:
            alerts: Alert store
            provider: Market snapshot provider
            aggregator: Frequency aggregator receiving trigger events
            engine: Condition evaluator
            audit: Audit sink for test fires
            locks: Per-alert locks shared with user-facing operations
            interval_seconds: Seconds between ticks
            max_workers: Concurrent market data fetches
            fetch_timeout: Seconds to wait for one fetch
            tick_timeout: Seconds to wait for all fetches of a tick
        """
        self.alerts = alerts
        self.provider = provider
        self.aggregator = aggregator
        self.engine = engine or RuleEngine()
        self.audit = audit or LoggingAuditSink()
        self.locks = locks or AlertLocks()
        self.interval_seconds = interval_seconds
        self.fetch_timeout = fetch_timeout
        self.tick_timeout = tick_timeout
        self.last_tick: Optional[TickResult] = None

        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fetch")
        self._tick_lock = threading.Lock()
        self._sequence = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start ticking on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started, interval {self.interval_seconds}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop ticking and wait for the running tick to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self._pool.shutdown(wait=False, cancel_futures=True)
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"Unexpected error in evaluation tick: {e}")
            self._stop.wait(self.interval_seconds)

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        """
        Run one evaluation pass over every active alert.

        Fetches one value per (asset, metric), evaluates every alert sharing
        it, persists the outcome per alert and hands triggers to the
        frequency aggregator. Digests that came due are flushed at the end.
        """
        now = now or utcnow()
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous tick still running, skipping")
            return TickResult(sequence=self._sequence, started_at=now, skipped=True)

        try:
            self._sequence += 1
            result = TickResult(sequence=self._sequence, started_at=now)
            self._tick(result, now)
            self.last_tick = result
            return result
        finally:
            self._tick_lock.release()

    def _tick(self, result: TickResult, now: datetime) -> None:
        try:
            active = self.alerts.list_active()
        except StoreUnavailableError as e:
            logger.error(f"Tick {result.sequence} aborted, alert store unavailable: {e}")
            result.aborted = True
            return

        groups: dict[tuple[str, str], list[Alert]] = defaultdict(list)
        for alert in active:
            groups[(alert.cryptocurrency, alert.metric)].append(alert)
        logger.debug(
            f"Tick {result.sequence}: {len(active)} alerts, {len(groups)} market values"
        )

        events: list[TriggerEvent] = []
        if groups:
            deadline = time.monotonic() + self.tick_timeout
            self._prefetch(sorted({asset for asset, _ in groups}), deadline)
            futures = {
                key: self._pool.submit(self.provider.get_value, *key) for key in groups
            }
            for key, future in futures.items():
                value = self._await(key, future, deadline)
                for alert in groups[key]:
                    event = self._apply(alert, value, now, result)
                    if event is not None:
                        events.append(event)

        if events:
            try:
                result.records += self.aggregator.submit(events, now)
            except Exception as e:
                logger.error(f"Failed to hand off {len(events)} trigger(s): {e}")
        try:
            result.records += self.aggregator.flush_due(now)
        except Exception as e:
            logger.error(f"Failed to flush pending notifications: {e}")

        logger.info(
            f"Tick {result.sequence}: evaluated {result.evaluated}, "
            f"triggered {result.triggered}, fetch failures {result.fetch_failures}"
        )

    def _prefetch(self, assets: list[str], deadline: float) -> None:
        """Warm the provider cache; any failure falls back to per-value fetches."""
        future = self._pool.submit(self.provider.prefetch, assets)
        remaining = max(0.0, min(self.fetch_timeout, deadline - time.monotonic()))
        try:
            future.result(timeout=remaining)
        except FutureTimeoutError:
            self._abandon(future, "batch quote fetch")
        except Exception as e:
            logger.warning(f"Batch quote fetch failed, falling back per asset: {e}")

    def _await(
        self, key: tuple[str, str], future: Future, deadline: float
    ) -> Optional[float]:
        """Wait for one fetch within both the per-fetch and the tick deadline."""
        remaining = max(0.0, min(self.fetch_timeout, deadline - time.monotonic()))
        try:
            return float(future.result(timeout=remaining))
        except FutureTimeoutError:
            self._abandon(future, f"{key[1]} fetch for {key[0]}")
        except Exception as e:
            logger.warning(f"Failed to fetch {key[1]} for {key[0]}: {e}")
        return None

    def _abandon(self, future: Future, what: str) -> None:
        """Give up waiting on a fetch; a call already running keeps its worker."""
        if future.cancel():
            logger.warning(f"Timed out waiting to start {what}")
        else:
            logger.warning(
                f"Timed out on {what}; its fetch worker stays busy until the call returns"
            )

    def _apply(
        self,
        alert: Alert,
        value: Optional[float],
        now: datetime,
        result: TickResult,
    ) -> Optional[TriggerEvent]:
        """Evaluate one alert and persist the outcome; returns its trigger event."""
        with self.locks.hold(alert.id):
            try:
                if value is None:
                    result.fetch_failures += 1
                    self.alerts.record_evaluation(
                        alert.id, alert.version, last_checked=now, fetched=False
                    )
                    return None

                evaluation = self.engine.evaluate_alert(alert, value)
                triggered_at = now if evaluation.triggered else None
                self.alerts.record_evaluation(
                    alert.id,
                    alert.version,
                    last_checked=now,
                    previous_value=alert.current_value,
                    current_value=value,
                    triggered_at=triggered_at,
                    message=evaluation.message if evaluation.triggered else None,
                )
                result.evaluated += 1
            except (ConcurrentModificationError, AlertNotFoundError) as e:
                logger.info(f"Skipping alert {alert.id} this tick: {e}")
                result.conflicts += 1
                return None
            except Exception as e:
                logger.error(f"Error evaluating alert {alert.id}: {e}")
                result.errors += 1
                return None

        if not evaluation.triggered:
            return None
        result.triggered += 1
        logger.info(f"Alert {alert.id} triggered: {evaluation.message}")
        triggered = replace(
            alert,
            is_triggered=True,
            triggered_at=now,
            message=evaluation.message,
            previous_value=alert.current_value,
            current_value=value,
            last_checked=now,
        )
        return TriggerEvent.for_alert(triggered)

    def test_fire(
        self, alert_id: int, actor_id: Optional[int] = None
    ) -> list[DispatchRecord]:
        """
        Deliver a synthetic trigger for one alert right away.

        Skips evaluation, the cadence and quiet hours; channels the owner has
        disabled are still held back. The alert's own state is untouched.

        Returns:
            Records of every channel of the alert

        Raises:
            AlertNotFoundError: If the alert does not exist
        """
        alert = self.alerts.get_by_id(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")

        now = utcnow()
        synthetic = replace(alert, triggered_at=now, message=self.engine.describe(alert))
        event = TriggerEvent.for_alert(synthetic, kind="test")

        records = self.aggregator.dispatch_test(event, now)

        self.audit.safe_record(
            actor_id if actor_id is not None else alert.user_id,
            ALERT_TEST_FIRED,
            "alert",
            alert.id,
            f"Test fired {alert.type} alert for {alert.cryptocurrency}",
            details={record.channel: record.status for record in records},
            severity="low",
            category="system",
        )
        return records
