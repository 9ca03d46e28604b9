"""
Placeholder adapters for channels without a delivery backend.
"""

import logging
from typing import Optional

from .base import Notifier, NotificationMessage, NotificationResult

logger = logging.getLogger(__name__)


class SimulatedNotifier(Notifier):
    """Accepts every message and logs it instead of delivering."""

    live = False

    def __init__(self, channel: Optional[str] = None):
        if channel is not None:
            self.channel = channel

    def send(self, message: NotificationMessage) -> NotificationResult:
        logger.info(
            f"{self.channel} notification to {self._address(message)} "
            f"simulated: {message.headline}"
        )
        return NotificationResult(success=True, channel=self.channel, simulated=True)

    def _address(self, message: NotificationMessage) -> str:
        return f"user {message.recipient.id}"


class PushNotifier(SimulatedNotifier):
    """Push channel; accepted and logged until a push backend exists."""

    channel = "push"


class SmsNotifier(SimulatedNotifier):
    """SMS channel; accepted and logged until an SMS backend exists."""

    channel = "sms"

    def _address(self, message: NotificationMessage) -> str:
        return message.recipient.phone or super()._address(message)
