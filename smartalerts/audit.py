"""
Audit sink for administrative and user-visible actions.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from smartalerts.database.models import AuditEntry
from smartalerts.database.repository import AuditLogRepository

logger = logging.getLogger(__name__)

ALERT_TEST_FIRED = "alert_test_fired"
ALERTS_BULK_TOGGLED = "alerts_bulk_toggled"
ALERT_ADMIN_OVERRIDE = "alert_admin_override"
PREFERENCES_UPDATED = "preferences_updated"

SEVERITIES = ("low", "medium", "high", "critical")
CATEGORIES = (
    "user_management",
    "content_moderation",
    "financial",
    "security",
    "system",
)


class AuditSink(ABC):
    """Abstract destination for audit entries."""

    @abstractmethod
    def record(
        self,
        actor_id: Optional[int],
        action: str,
        target_type: str,
        target_id: Optional[int],
        description: str,
        details: Optional[dict[str, Any]] = None,
        severity: str = "medium",
        category: str = "system",
    ) -> None:
        """Write one audit entry."""
        pass

    def safe_record(self, *args, **kwargs) -> None:
        """
        Record an entry without ever raising.

        Auditing is fire-and-forget for the engine: a failing sink is logged
        and the caller carries on.
        """
        try:
            self.record(*args, **kwargs)
        except Exception as e:
            logger.error(f"Failed to write audit entry: {e}")


class SqliteAuditSink(AuditSink):
    """Writes entries to the audit_log table."""

    def __init__(self, repository: AuditLogRepository):
        self.repository = repository

    def record(
        self,
        actor_id: Optional[int],
        action: str,
        target_type: str,
        target_id: Optional[int],
        description: str,
        details: Optional[dict[str, Any]] = None,
        severity: str = "medium",
        category: str = "system",
    ) -> None:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")
        if category not in CATEGORIES:
            raise ValueError(f"Unknown category: {category}")
        self.repository.append(
            AuditEntry(
                actor_id=actor_id,
                action=action,
                target_type=target_type,
                target_id=target_id,
                description=description,
                details=details or {},
                severity=severity,
                category=category,
            )
        )


class LoggingAuditSink(AuditSink):
    """Writes entries to the smartalerts.audit logger."""

    def __init__(self, logger_name: str = "smartalerts.audit"):
        self.logger = logging.getLogger(logger_name)

    def record(
        self,
        actor_id: Optional[int],
        action: str,
        target_type: str,
        target_id: Optional[int],
        description: str,
        details: Optional[dict[str, Any]] = None,
        severity: str = "medium",
        category: str = "system",
    ) -> None:
        level = logging.WARNING if severity in ("high", "critical") else logging.INFO
        self.logger.log(
            level,
            f"[{category}] {action} by {actor_id} on {target_type} {target_id}: "
            f"{description} {details or {}}",
        )
