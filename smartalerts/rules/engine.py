"""
Condition evaluation engine.
"""

from dataclasses import dataclass
from typing import Any, Optional

from smartalerts.database.models import Alert
from .types import LEGAL_CONDITIONS, risk_level

__all__ = ["Evaluation", "RuleEngine", "evaluate", "format_message"]

_PHRASES = {
    "above": "is above",
    "below": "is below",
    "crosses_up": "crossed above",
    "crosses_down": "crossed below",
}


@dataclass(frozen=True)
class Evaluation:
    """Outcome of evaluating one condition."""

    triggered: bool
    message: str = ""


def evaluate(
    alert_type: str,
    condition: str,
    threshold: float,
    previous: Optional[float],
    current: float,
    metadata: Optional[dict[str, Any]] = None,
    asset: str = "",
) -> Evaluation:
    """
    Decide whether a condition holds for the latest observation.

    Comparisons are strict so a value sitting exactly on the threshold does
    not fire. Crossing and change conditions never fire without a previous
    observation.

    Args:
        alert_type: Metric family of the alert
        condition: Condition name
        threshold: Positive threshold in the metric's unit
        previous: Value seen on the preceding tick, if any
        current: Freshly fetched value
        metadata: Alert metadata (technical indicator name)
        asset: Asset identifier used in the message

    Returns:
        Evaluation with the trigger decision and a message when triggered
    """
    if condition not in LEGAL_CONDITIONS.get(alert_type, ()):
        return Evaluation(triggered=False)

    triggered = False
    change_pct: Optional[float] = None

    if condition == "above":
        triggered = current > threshold
    elif condition == "below":
        triggered = current < threshold
    elif condition == "crosses_up":
        triggered = previous is not None and previous <= threshold < current
    elif condition == "crosses_down":
        triggered = previous is not None and previous >= threshold > current
    elif condition == "change_percent":
        if previous is not None and previous != 0:
            change_pct = (current - previous) / abs(previous) * 100
            triggered = abs(change_pct) >= threshold

    if not triggered:
        return Evaluation(triggered=False)

    message = format_message(
        alert_type, condition, threshold, current, metadata or {}, asset, change_pct
    )
    return Evaluation(triggered=True, message=message)


def format_message(
    alert_type: str,
    condition: str,
    threshold: float,
    current: float,
    metadata: dict[str, Any],
    asset: str,
    change_pct: Optional[float] = None,
) -> str:
    """Human-readable description of a trigger."""
    crypto = asset.upper()

    if alert_type == "price":
        subject, fmt = f"{crypto} price", _usd
    elif alert_type == "volume":
        subject, fmt = f"{crypto} 24h volume", _usd_millions
    elif alert_type == "sentiment":
        subject, fmt = f"{crypto} sentiment score", _score
    elif alert_type == "risk":
        subject, fmt = f"{crypto} risk score", _score
    else:
        indicator = metadata.get("technicalIndicator", "RSI")
        subject, fmt = f"{crypto} {indicator}", _score

    if condition == "change_percent":
        message = (
            f"{subject} moved {change_pct:+.2f}% "
            f"(threshold: {threshold:g}%), now {fmt(current)}"
        )
    else:
        message = (
            f"{subject} {_PHRASES[condition]} {fmt(threshold)} "
            f"(current: {fmt(current)})"
        )

    if alert_type == "risk":
        message += f" - {risk_level(current)} risk"
    return message


def _usd(value: float) -> str:
    if float(value).is_integer():
        return f"${value:,.0f}"
    return f"${value:,.2f}"


def _usd_millions(value: float) -> str:
    return f"${value / 1e6:,.2f}M"


def _score(value: float) -> str:
    return f"{value:,.2f}".rstrip("0").rstrip(".")


class RuleEngine:
    """Evaluates alerts against fresh market values."""

    def evaluate_alert(self, alert: Alert, current: float) -> Evaluation:
        """
        Evaluate an alert against a freshly fetched value.

        The alert's current_value is the observation of the preceding tick
        and becomes the "previous" side of crossing and change conditions.
        """
        return evaluate(
            alert.type,
            alert.condition,
            alert.threshold,
            alert.current_value,
            current,
            metadata=alert.metadata,
            asset=alert.cryptocurrency,
        )

    def describe(self, alert: Alert) -> str:
        """Message for a synthetic trigger such as a test fire."""
        value = alert.current_value if alert.current_value is not None else alert.threshold
        return "Test alert: " + format_message(
            alert.type,
            alert.condition if alert.condition != "change_percent" else "above",
            alert.threshold,
            value,
            alert.metadata,
            alert.cryptocurrency,
        )
