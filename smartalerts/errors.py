"""
Exception hierarchy for the alert engine.
"""


class SmartAlertsError(Exception):
    """Base class for engine errors."""

    pass


class AlertValidationError(SmartAlertsError):
    """Raised when an alert definition is invalid."""

    pass


class PreferenceValidationError(SmartAlertsError):
    """Raised when notification preferences are invalid."""

    pass


class AlertNotFoundError(SmartAlertsError):
    """Raised when an alert does not exist or belongs to another user."""

    pass


class ConcurrentModificationError(SmartAlertsError):
    """Raised when an alert changed between read and write."""

    pass


class MarketDataError(SmartAlertsError):
    """Raised when a market value cannot be fetched."""

    pass


class StoreUnavailableError(SmartAlertsError):
    """Raised when the alert store cannot be reached."""

    pass
