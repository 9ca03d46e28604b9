"""
Alert types, conditions and definition validation.
"""

import math
from typing import Any

from smartalerts.database.models import CHANNELS, Alert
from smartalerts.errors import AlertValidationError

ALERT_TYPES = ("price", "sentiment", "risk", "volume", "technical")
CONDITIONS = ("above", "below", "crosses_up", "crosses_down", "change_percent")
TECHNICAL_INDICATORS = ("RSI", "MACD", "SMA", "EMA")

# Conditions each alert type can be evaluated with
LEGAL_CONDITIONS: dict[str, tuple[str, ...]] = {
    "price": CONDITIONS,
    "sentiment": ("above", "below", "change_percent"),
    "risk": ("above", "below", "change_percent"),
    "volume": ("above", "below", "change_percent"),
    "technical": ("above", "below"),
}

# Conditions that need the previous observation
STATEFUL_CONDITIONS = ("crosses_up", "crosses_down", "change_percent")


def risk_level(score: float) -> str:
    """Bucket a 0-100 risk score."""
    if score < 20:
        return "Low"
    if score < 50:
        return "Medium"
    if score < 80:
        return "High"
    return "Extreme"


def normalize_definition(fields: dict[str, Any]) -> dict[str, Any]:
    """
    Validate and normalize user-supplied alert fields.

    Args:
        fields: type, cryptocurrency, condition, threshold and optionally
            notification_method and metadata

    Returns:
        Normalized copy of the fields

    Raises:
        AlertValidationError: If any field is missing or invalid
    """
    missing = [
        name
        for name in ("type", "cryptocurrency", "condition", "threshold")
        if fields.get(name) in (None, "")
    ]
    if missing:
        raise AlertValidationError(
            f"Missing required fields: {', '.join(missing)}"
        )

    alert_type = fields["type"]
    if alert_type not in ALERT_TYPES:
        raise AlertValidationError(
            f"Invalid alert type. Must be one of: {', '.join(ALERT_TYPES)}"
        )

    condition = fields["condition"]
    if condition not in CONDITIONS:
        raise AlertValidationError(
            f"Invalid condition. Must be one of: {', '.join(CONDITIONS)}"
        )
    if condition not in LEGAL_CONDITIONS[alert_type]:
        raise AlertValidationError(
            f"Condition '{condition}' is not supported for {alert_type} alerts"
        )

    try:
        threshold = float(fields["threshold"])
    except (TypeError, ValueError) as e:
        raise AlertValidationError("Threshold must be a number") from e
    if not math.isfinite(threshold) or threshold <= 0:
        raise AlertValidationError("Threshold must be a positive number")

    cryptocurrency = str(fields["cryptocurrency"]).strip().lower()
    if not cryptocurrency:
        raise AlertValidationError("Cryptocurrency is required")

    methods = fields.get("notification_method")
    if methods is None:
        methods = ["email"]
    if isinstance(methods, str):
        methods = [methods]
    methods = list(dict.fromkeys(methods))
    if not methods:
        raise AlertValidationError("At least one notification method is required")
    unknown = [m for m in methods if m not in CHANNELS]
    if unknown:
        raise AlertValidationError(
            f"Unknown notification method: {', '.join(unknown)}"
        )

    metadata = dict(fields.get("metadata") or {})
    if alert_type == "technical":
        indicator = str(metadata.get("technicalIndicator") or "RSI").upper()
        if indicator not in TECHNICAL_INDICATORS:
            raise AlertValidationError(
                f"Unknown technical indicator: {indicator}"
            )
        metadata["technicalIndicator"] = indicator

    return {
        "type": alert_type,
        "cryptocurrency": cryptocurrency,
        "condition": condition,
        "threshold": threshold,
        "notification_method": methods,
        "metadata": metadata,
    }


def validate_alert(alert: Alert) -> None:
    """
    Re-validate an alert entity before it is stored.

    Raises:
        AlertValidationError: If the alert breaks a definition invariant
    """
    normalize_definition(
        {
            "type": alert.type,
            "cryptocurrency": alert.cryptocurrency,
            "condition": alert.condition,
            "threshold": alert.threshold,
            "notification_method": alert.notification_method,
            "metadata": alert.metadata,
        }
    )
    if alert.is_triggered and alert.triggered_at is None:
        raise AlertValidationError("Triggered alerts must have triggered_at set")
