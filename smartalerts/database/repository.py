"""
Repository classes for CRUD operations.
"""

import json
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional

from smartalerts.errors import AlertNotFoundError, ConcurrentModificationError

from .connection import Database
from .models import (
    PENDING_RETRY,
    Alert,
    AuditEntry,
    DispatchRecord,
    NotificationPreference,
    User,
    as_utc,
    utcnow,
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp as UTC ISO-8601."""
    if value is None:
        return None
    return as_utc(value).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


class UserRepository:
    """CRUD operations for users."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, user: User) -> User:
        """Create a new user."""
        created_at = user.created_at or utcnow()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO users (email, name, phone, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user.email, user.name, user.phone, _ts(created_at)),
            )
            user.id = cursor.lastrowid
        user.created_at = created_at
        return user

    def get_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def delete(self, user_id: int) -> None:
        """Delete user."""
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM users WHERE id = ?", (user_id,))

    def list_all(self) -> list[User]:
        """List all users."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM users ORDER BY id")
            rows = cursor.fetchall()
        return [self._row_to_user(row) for row in rows]

    def _row_to_user(self, row) -> User:
        """Convert database row to User."""
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            phone=row["phone"],
            created_at=_parse_ts(row["created_at"]),
        )


class AlertRepository:
    """
    Persistence and query surface for alerts.

    Every write bumps the row's version. Writers that read an alert and
    write it back pass the version they read; a mismatch means someone else
    changed the alert in between and raises ConcurrentModificationError.
    """

    _PENDING = """
        is_triggered = 1
        AND triggered_at IS NOT NULL
        AND (notified_at IS NULL OR notified_at < triggered_at)
    """

    def __init__(self, db: Database):
        self.db = db

    def create(self, alert: Alert) -> Alert:
        """Create a new alert."""
        now = utcnow()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO alerts (
                    user_id, type, cryptocurrency, condition, threshold,
                    metadata, notification_method, is_active, is_triggered,
                    current_value, previous_value, last_checked, triggered_at,
                    notified_at, pending_since, message, version, created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    alert.user_id,
                    alert.type,
                    alert.cryptocurrency,
                    alert.condition,
                    alert.threshold,
                    json.dumps(alert.metadata),
                    json.dumps(alert.notification_method),
                    1 if alert.is_active else 0,
                    1 if alert.is_triggered else 0,
                    alert.current_value,
                    alert.previous_value,
                    _ts(alert.last_checked),
                    _ts(alert.triggered_at),
                    _ts(alert.notified_at),
                    _ts(alert.pending_since),
                    alert.message,
                    _ts(now),
                    _ts(now),
                ),
            )
            alert.id = cursor.lastrowid
        alert.version = 0
        alert.created_at = now
        alert.updated_at = now
        return alert

    def get_by_id(self, alert_id: int) -> Optional[Alert]:
        """Get alert by ID."""
        with self.db.transaction() as cursor:
            cursor.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_alert(row)

    def get_for_user(self, user_id: int, alert_id: int) -> Optional[Alert]:
        """Get alert by ID, only if owned by the user."""
        alert = self.get_by_id(alert_id)
        if alert is None or alert.user_id != user_id:
            return None
        return alert

    def list_for_user(
        self, user_id: int, alert_type: Optional[str] = None
    ) -> list[Alert]:
        """List a user's alerts, newest first."""
        query = "SELECT * FROM alerts WHERE user_id = ?"
        params: list[Any] = [user_id]
        if alert_type:
            query += " AND type = ?"
            params.append(alert_type)
        query += " ORDER BY created_at DESC, id DESC"
        with self.db.transaction() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [self._row_to_alert(row) for row in rows]

    def list_active(self) -> list[Alert]:
        """List every alert that participates in evaluation."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM alerts
                WHERE is_active = 1
                ORDER BY cryptocurrency, type, id
                """
            )
            rows = cursor.fetchall()
        return [self._row_to_alert(row) for row in rows]

    def update(self, alert: Alert) -> Alert:
        """
        Write back every field of an alert read earlier.

        Raises:
            ConcurrentModificationError: If the stored version moved on
            AlertNotFoundError: If the alert was deleted
        """
        now = utcnow()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE alerts
                SET type = ?, cryptocurrency = ?, condition = ?, threshold = ?,
                    metadata = ?, notification_method = ?, is_active = ?,
                    is_triggered = ?, current_value = ?, previous_value = ?,
                    last_checked = ?, triggered_at = ?, notified_at = ?,
                    pending_since = ?,
                    message = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (
                    alert.type,
                    alert.cryptocurrency,
                    alert.condition,
                    alert.threshold,
                    json.dumps(alert.metadata),
                    json.dumps(alert.notification_method),
                    1 if alert.is_active else 0,
                    1 if alert.is_triggered else 0,
                    alert.current_value,
                    alert.previous_value,
                    _ts(alert.last_checked),
                    _ts(alert.triggered_at),
                    _ts(alert.notified_at),
                    _ts(alert.pending_since),
                    alert.message,
                    _ts(now),
                    alert.id,
                    alert.version,
                ),
            )
            self._check_written(cursor, alert.id)
        alert.version += 1
        alert.updated_at = now
        return alert

    def record_evaluation(
        self,
        alert_id: int,
        expected_version: int,
        last_checked: datetime,
        previous_value: Optional[float] = None,
        current_value: Optional[float] = None,
        fetched: bool = True,
        triggered_at: Optional[datetime] = None,
        message: Optional[str] = None,
    ) -> int:
        """
        Persist the outcome of one evaluation tick.

        Only applies while the alert is still active and unchanged since it
        was read. A failed fetch (fetched=False) only moves last_checked.

        Returns:
            The new version

        Raises:
            ConcurrentModificationError: If the alert changed or was deactivated
            AlertNotFoundError: If the alert was deleted
        """
        now = utcnow()
        assignments = ["last_checked = ?"]
        params: list[Any] = [_ts(last_checked)]
        if fetched:
            assignments += ["previous_value = ?", "current_value = ?"]
            params += [previous_value, current_value]
        if triggered_at is not None:
            # SET expressions see the row as it was before this update
            assignments += [
                f"pending_since = CASE WHEN {self._PENDING} "
                "THEN COALESCE(pending_since, triggered_at) ELSE ? END",
                "is_triggered = 1",
                "triggered_at = ?",
                "message = ?",
            ]
            params += [_ts(triggered_at), _ts(triggered_at), message]
        assignments += ["version = version + 1", "updated_at = ?"]
        params += [_ts(now), alert_id, expected_version]

        with self.db.transaction() as cursor:
            cursor.execute(
                f"""
                UPDATE alerts SET {", ".join(assignments)}
                WHERE id = ? AND version = ? AND is_active = 1
                """,
                params,
            )
            self._check_written(cursor, alert_id)
        return expected_version + 1

    def mark_notified(self, alert_id: int, notified_at: datetime) -> None:
        """Mark the latest trigger of an alert as handed off."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE alerts
                SET notified_at = ?, version = version + 1, updated_at = ?
                WHERE id = ?
                """,
                (_ts(notified_at), _ts(utcnow()), alert_id),
            )

    def delete(self, alert_id: int) -> bool:
        """Delete an alert. Returns False if it did not exist."""
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM alerts WHERE id = ?", (alert_id,))
            return cursor.rowcount > 0

    def pending_triggers(self, user_id: Optional[int] = None) -> list[Alert]:
        """Triggered alerts whose latest trigger was not handed off yet."""
        query = f"SELECT * FROM alerts WHERE {self._PENDING}"
        params: list[Any] = []
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY triggered_at, id"
        with self.db.transaction() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [self._row_to_alert(row) for row in rows]

    def users_with_pending_triggers(self) -> list[int]:
        with self.db.transaction() as cursor:
            cursor.execute(
                f"SELECT DISTINCT user_id FROM alerts WHERE {self._PENDING} "
                "ORDER BY user_id"
            )
            return [row["user_id"] for row in cursor.fetchall()]

    def count_by_type(self, user_id: int) -> dict[str, dict[str, int]]:
        """Total, active and triggered counts per alert type."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT type,
                       COUNT(*) AS total,
                       SUM(is_active) AS active,
                       SUM(is_triggered) AS triggered
                FROM alerts
                WHERE user_id = ?
                GROUP BY type
                """,
                (user_id,),
            )
            rows = cursor.fetchall()
        return {
            row["type"]: {
                "total": row["total"],
                "active": row["active"] or 0,
                "triggered": row["triggered"] or 0,
            }
            for row in rows
        }

    def count_triggered_since(self, user_id: int, since: datetime) -> int:
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT COUNT(*) FROM alerts
                WHERE user_id = ? AND is_triggered = 1 AND triggered_at > ?
                """,
                (user_id, _ts(since)),
            )
            return cursor.fetchone()[0]

    def triggered_history(
        self,
        user_id: int,
        alert_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Alert], int]:
        """Triggered alerts, most recent first, with the total count."""
        where = "user_id = ? AND is_triggered = 1"
        params: list[Any] = [user_id]
        if alert_type and alert_type != "all":
            where += " AND type = ?"
            params.append(alert_type)
        with self.db.transaction() as cursor:
            cursor.execute(f"SELECT COUNT(*) FROM alerts WHERE {where}", params)
            total = cursor.fetchone()[0]
            cursor.execute(
                f"""
                SELECT * FROM alerts WHERE {where}
                ORDER BY triggered_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                params + [limit, offset],
            )
            rows = cursor.fetchall()
        return [self._row_to_alert(row) for row in rows], total

    def list_stale(self, cutoff: datetime) -> list[Alert]:
        """Active alerts not evaluated since the cutoff."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM alerts
                WHERE is_active = 1
                  AND (last_checked IS NULL OR last_checked < ?)
                ORDER BY id
                """,
                (_ts(cutoff),),
            )
            rows = cursor.fetchall()
        return [self._row_to_alert(row) for row in rows]

    def _check_written(self, cursor, alert_id: Optional[int]) -> None:
        if cursor.rowcount > 0:
            return
        cursor.execute("SELECT 1 FROM alerts WHERE id = ?", (alert_id,))
        if cursor.fetchone() is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        raise ConcurrentModificationError(f"Alert {alert_id} was modified")

    def _row_to_alert(self, row) -> Alert:
        """Convert database row to Alert."""
        return Alert(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            cryptocurrency=row["cryptocurrency"],
            condition=row["condition"],
            threshold=row["threshold"],
            metadata=json.loads(row["metadata"]),
            notification_method=json.loads(row["notification_method"]),
            is_active=bool(row["is_active"]),
            is_triggered=bool(row["is_triggered"]),
            current_value=row["current_value"],
            previous_value=row["previous_value"],
            last_checked=_parse_ts(row["last_checked"]),
            triggered_at=_parse_ts(row["triggered_at"]),
            notified_at=_parse_ts(row["notified_at"]),
            pending_since=_parse_ts(row["pending_since"]),
            message=row["message"],
            version=row["version"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )


class PreferenceRepository:
    """Storage for notification preference snapshots."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, user_id: int) -> Optional[NotificationPreference]:
        """Get a user's stored preferences, or None if never saved."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT data FROM notification_preferences WHERE user_id = ?",
                (user_id,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return NotificationPreference.from_dict(json.loads(row["data"]))

    def save(self, user_id: int, preference: NotificationPreference) -> None:
        """Replace a user's preference snapshot."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO notification_preferences (user_id, data, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
                """,
                (user_id, json.dumps(preference.to_dict()), _ts(utcnow())),
            )


class DispatchRecordRepository:
    """
    Append-only storage for dispatch records.

    Records are never updated or deleted; correct() appends a new record
    that points at the one it supersedes.
    """

    # Records not superseded by a later correction
    _EFFECTIVE = """
        id NOT IN (
            SELECT corrects_id FROM dispatch_records WHERE corrects_id IS NOT NULL
        )
    """

    def __init__(self, db: Database):
        self.db = db

    def append(self, record: DispatchRecord) -> DispatchRecord:
        """Append a record and return it with its ID."""
        return self.append_many([record])[0]

    def append_many(self, records: list[DispatchRecord]) -> list[DispatchRecord]:
        """Append several records in one transaction."""
        stored = []
        with self.db.transaction() as cursor:
            for record in records:
                created_at = record.created_at or utcnow()
                cursor.execute(
                    """
                    INSERT INTO dispatch_records (
                        event_key, alert_id, user_id, channel, status, kind,
                        digest_id, error, attempts, simulated, corrects_id,
                        created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.event_key,
                        record.alert_id,
                        record.user_id,
                        record.channel,
                        record.status,
                        record.kind,
                        record.digest_id,
                        record.error,
                        record.attempts,
                        1 if record.simulated else 0,
                        record.corrects_id,
                        _ts(created_at),
                    ),
                )
                stored.append(
                    replace(record, id=cursor.lastrowid, created_at=created_at)
                )
        return stored

    def correct(
        self, record_id: int, status: str, error: Optional[str] = None
    ) -> DispatchRecord:
        """Append a status correction for an existing record."""
        original = self.get_by_id(record_id)
        if original is None:
            raise ValueError(f"Dispatch record {record_id} not found")
        return self.append(
            DispatchRecord(
                event_key=original.event_key,
                alert_id=original.alert_id,
                user_id=original.user_id,
                channel=original.channel,
                status=status,
                kind=original.kind,
                error=error,
                attempts=original.attempts,
                simulated=original.simulated,
                digest_id=original.digest_id,
                corrects_id=original.id,
            )
        )

    def get_by_id(self, record_id: int) -> Optional[DispatchRecord]:
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM dispatch_records WHERE id = ?", (record_id,)
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def for_event(self, event_key: str) -> list[DispatchRecord]:
        """All records of one trigger event, oldest first."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM dispatch_records WHERE event_key = ? ORDER BY id",
                (event_key,),
            )
            rows = cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    def handled_channels(self, event_key: str) -> set[str]:
        """Channels that already hold a final record for an event."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT DISTINCT channel FROM dispatch_records
                WHERE event_key = ? AND status != ?
                """,
                (event_key, PENDING_RETRY),
            )
            return {row["channel"] for row in cursor.fetchall()}

    def list_for_user(self, user_id: int, limit: int = 50) -> list[DispatchRecord]:
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM dispatch_records
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    def status_counts(
        self,
        user_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> dict[str, int]:
        """Count effective (not superseded) records per status."""
        query = f"SELECT status, COUNT(*) AS n FROM dispatch_records WHERE {self._EFFECTIVE}"
        params: list[Any] = []
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if since is not None:
            query += " AND created_at > ?"
            params.append(_ts(since))
        query += " GROUP BY status"
        with self.db.transaction() as cursor:
            cursor.execute(query, params)
            return {row["status"]: row["n"] for row in cursor.fetchall()}

    def last_digest_at(self, user_id: int) -> Optional[datetime]:
        """When the user's most recent digest was attempted on some channel."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                SELECT MAX(created_at) FROM dispatch_records
                WHERE user_id = ? AND kind = 'digest'
                  AND status IN ('sent', 'failed')
                """,
                (user_id,),
            )
            return _parse_ts(cursor.fetchone()[0])

    def _row_to_record(self, row) -> DispatchRecord:
        return DispatchRecord(
            id=row["id"],
            event_key=row["event_key"],
            alert_id=row["alert_id"],
            user_id=row["user_id"],
            channel=row["channel"],
            status=row["status"],
            kind=row["kind"],
            digest_id=row["digest_id"],
            error=row["error"],
            attempts=row["attempts"],
            simulated=bool(row["simulated"]),
            corrects_id=row["corrects_id"],
            created_at=_parse_ts(row["created_at"]),
        )


class AuditLogRepository:
    """Append-only storage for audit entries."""

    def __init__(self, db: Database):
        self.db = db

    def append(self, entry: AuditEntry) -> int:
        created_at = entry.created_at or utcnow()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO audit_log (
                    actor_id, action, target_type, target_id, description,
                    details, severity, category, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.actor_id,
                    entry.action,
                    entry.target_type,
                    entry.target_id,
                    entry.description,
                    json.dumps(entry.details, default=str),
                    entry.severity,
                    entry.category,
                    _ts(created_at),
                ),
            )
            return cursor.lastrowid

    def list_entries(
        self, action: Optional[str] = None, limit: int = 100
    ) -> list[AuditEntry]:
        query = "SELECT * FROM audit_log"
        params: list[Any] = []
        if action:
            query += " WHERE action = ?"
            params.append(action)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self.db.transaction() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [
            AuditEntry(
                id=row["id"],
                actor_id=row["actor_id"],
                action=row["action"],
                target_type=row["target_type"],
                target_id=row["target_id"],
                description=row["description"],
                details=json.loads(row["details"]),
                severity=row["severity"],
                category=row["category"],
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]
