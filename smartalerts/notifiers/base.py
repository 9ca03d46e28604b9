"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from smartalerts.database.models import TriggerEvent, User


@dataclass
class NotificationResult:
    """Result of a notification attempt."""

    success: bool
    channel: str
    error: Optional[str] = None
    simulated: bool = False


@dataclass
class NotificationMessage:
    """What a channel adapter delivers: one trigger, a digest, or a test."""

    recipient: User
    events: list[TriggerEvent] = field(default_factory=list)
    kind: str = "alert"  # "alert", "digest", "test"
    period: Optional[str] = None  # "daily" or "weekly" for digests

    @property
    def is_digest(self) -> bool:
        return self.kind == "digest"

    @property
    def headline(self) -> str:
        """Short one-line summary of the message."""
        if self.is_digest:
            count = len(self.events)
            noun = "alert" if count == 1 else "alerts"
            period = f"{self.period} " if self.period else ""
            return f"Your {period}alert digest: {count} {noun}"
        event = self.events[0]
        return f"Cryptosden Alert: {event.alert.cryptocurrency.upper()}"


class Notifier(ABC):
    """Abstract base class for channel adapters."""

    channel: str = ""
    # False for adapters without an external delivery backend yet
    live: bool = True

    @abstractmethod
    def send(self, message: NotificationMessage) -> NotificationResult:
        """
        Deliver a notification.

        Args:
            message: Trigger, digest or test notification to deliver

        Returns:
            NotificationResult indicating success or failure
        """
        pass


class NotifierFactory:
    """Factory for creating notifier instances."""

    @staticmethod
    def create(config: dict[str, Any]) -> Notifier:
        """
        Create a notifier from configuration.

        Args:
            config: Notifier configuration dict

        Returns:
            Appropriate Notifier instance

        Raises:
            ValueError: If notifier type is unknown
        """
        notifier_type = config.get("type")

        if notifier_type == "email":
            from .email import EmailNotifier

            return EmailNotifier(
                smtp_host=config.get("smtp_host", ""),
                smtp_port=config.get("smtp_port", 587),
                smtp_user=config.get("smtp_user", ""),
                smtp_password=config.get("smtp_password", ""),
                from_address=config.get("from_address", ""),
                app_url=config.get("app_url", "http://localhost:3000"),
                timeout=config.get("timeout", 10.0),
            )

        elif notifier_type == "push":
            from .stub import PushNotifier

            return PushNotifier()

        elif notifier_type == "sms":
            from .stub import SmsNotifier

            return SmsNotifier()

        else:
            raise ValueError(f"Unknown notifier type: {notifier_type}")
