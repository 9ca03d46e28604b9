"""
Rule engine tests.
Tests for condition evaluation, messages and alert definition validation.
"""

import pytest

from smartalerts.database.models import Alert
from smartalerts.errors import AlertValidationError
from smartalerts.rules.engine import RuleEngine, evaluate
from smartalerts.rules.types import (
    LEGAL_CONDITIONS,
    normalize_definition,
    risk_level,
    validate_alert,
)


class TestThresholdConditions:
    """Test above/below evaluation."""

    def test_price_above_triggers(self):
        """Should trigger when price moves above the threshold."""
        result = evaluate("price", "above", 50000, 49000, 51000, asset="bitcoin")
        assert result.triggered is True
        assert "above $50,000" in result.message
        assert result.message == "BITCOIN price is above $50,000 (current: $51,000)"

    def test_price_below_triggers(self):
        """Should trigger when price is below the threshold."""
        result = evaluate("price", "below", 3000, None, 2950.5, asset="ethereum")
        assert result.triggered is True
        assert result.message == "ETHEREUM price is below $3,000 (current: $2,950.50)"

    @pytest.mark.parametrize("condition", ["above", "below"])
    def test_equal_to_threshold_never_triggers(self, condition):
        """Should not trigger when the value sits exactly on the threshold."""
        assert evaluate("price", condition, 100, 90, 100).triggered is False
        assert evaluate("sentiment", condition, 50, 60, 50).triggered is False

    def test_above_needs_no_previous(self):
        """Should evaluate above/below on the first observation."""
        assert evaluate("price", "above", 10, None, 11).triggered is True

    def test_not_triggered_has_empty_message(self):
        """Should leave the message empty when nothing fires."""
        result = evaluate("price", "above", 50000, 49000, 49500)
        assert result.triggered is False
        assert result.message == ""


class TestCrossingConditions:
    """Test crosses_up/crosses_down evaluation."""

    @pytest.mark.parametrize(
        "previous,current,threshold",
        [(49000, 51000, 50000), (50000, 50000.01, 50000), (1, 2, 1.5), (10, 1000, 999)],
    )
    def test_crossing_up_triggers_up_not_down(self, previous, current, threshold):
        """Should fire crosses_up and never crosses_down when previous <= threshold < current."""
        assert evaluate("price", "crosses_up", threshold, previous, current).triggered
        assert not evaluate("price", "crosses_down", threshold, previous, current).triggered

    def test_crossing_down_triggers(self):
        """Should fire crosses_down when the value falls through the threshold."""
        result = evaluate("price", "crosses_down", 50000, 50500, 49000, asset="bitcoin")
        assert result.triggered is True
        assert "crossed below $50,000" in result.message

    def test_staying_above_does_not_cross(self):
        """Should not fire crosses_up while already above the threshold."""
        assert evaluate("price", "crosses_up", 50000, 51000, 52000).triggered is False

    @pytest.mark.parametrize("condition", ["crosses_up", "crosses_down", "change_percent"])
    def test_first_observation_never_triggers(self, condition):
        """Should not fire stateful conditions without a previous value."""
        assert evaluate("price", condition, 1, None, 1_000_000).triggered is False
        assert evaluate("price", condition, 1, None, 0.0001).triggered is False


class TestChangePercent:
    """Test change_percent evaluation."""

    def test_below_threshold_change(self):
        """Should not fire for an 8% move against a 10% threshold."""
        assert evaluate("price", "change_percent", 10, 100, 108).triggered is False

    def test_above_threshold_change(self):
        """Should fire for an 11% move against a 10% threshold."""
        result = evaluate("price", "change_percent", 10, 100, 111, asset="bitcoin")
        assert result.triggered is True
        assert "+11.00%" in result.message

    def test_drop_counts_as_change(self):
        """Should fire on downward moves of sufficient size."""
        result = evaluate("volume", "change_percent", 10, 100e6, 85e6, asset="solana")
        assert result.triggered is True
        assert "-15.00%" in result.message
        assert "$85.00M" in result.message

    def test_exact_threshold_change_triggers(self):
        """Should fire when the change equals the threshold."""
        assert evaluate("price", "change_percent", 10, 100, 110).triggered is True

    def test_zero_previous_never_triggers(self):
        """Should not divide by a zero previous value."""
        assert evaluate("price", "change_percent", 10, 0, 50).triggered is False


class TestMessages:
    """Test type-aware trigger messages."""

    def test_risk_message_includes_level(self):
        """Should append the risk level to risk alerts."""
        result = evaluate("risk", "above", 70, 60, 85.5, asset="cardano")
        assert result.message == "CARDANO risk score is above 70 (current: 85.5) - Extreme risk"

    def test_technical_message_names_indicator(self):
        """Should name the technical indicator."""
        result = evaluate(
            "technical", "below", 30, 35, 28.25, {"technicalIndicator": "RSI"}, "bitcoin"
        )
        assert result.message == "BITCOIN RSI is below 30 (current: 28.25)"

    def test_illegal_condition_never_triggers(self):
        """Should not fire conditions the alert type does not support."""
        assert evaluate("technical", "crosses_up", 30, 20, 40).triggered is False

    @pytest.mark.parametrize(
        "score,level", [(0, "Low"), (19.9, "Low"), (20, "Medium"), (50, "High"), (80, "Extreme")]
    )
    def test_risk_levels(self, score, level):
        """Should bucket risk scores."""
        assert risk_level(score) == level


class TestRuleEngine:
    """Test evaluating Alert entities."""

    @pytest.fixture
    def engine(self):
        return RuleEngine()

    def test_uses_current_value_as_previous(self, engine):
        """Should compare against the value observed on the preceding tick."""
        alert = Alert(
            user_id=1,
            type="price",
            cryptocurrency="bitcoin",
            condition="crosses_up",
            threshold=50000,
            current_value=49000,
            previous_value=None,
        )
        assert engine.evaluate_alert(alert, 51000).triggered is True

    def test_describe_for_test_fire(self, engine):
        """Should describe an alert for a test notification."""
        alert = Alert(
            user_id=1,
            type="price",
            cryptocurrency="bitcoin",
            condition="above",
            threshold=50000,
        )
        assert engine.describe(alert) == (
            "Test alert: BITCOIN price is above $50,000 (current: $50,000)"
        )


class TestDefinitionValidation:
    """Test alert definition normalization."""

    @pytest.fixture
    def fields(self):
        return {
            "type": "price",
            "cryptocurrency": " Bitcoin ",
            "condition": "above",
            "threshold": "50000",
        }

    def test_normalizes_fields(self, fields):
        """Should lower-case the asset, parse the threshold and default the channel."""
        normalized = normalize_definition(fields)
        assert normalized["cryptocurrency"] == "bitcoin"
        assert normalized["threshold"] == 50000.0
        assert normalized["notification_method"] == ["email"]
        assert normalized["metadata"] == {}

    @pytest.mark.parametrize("threshold", [0, -5, "abc", float("nan"), float("inf")])
    def test_rejects_bad_threshold(self, fields, threshold):
        """Should reject non-positive or non-numeric thresholds."""
        fields["threshold"] = threshold
        with pytest.raises(AlertValidationError):
            normalize_definition(fields)

    def test_rejects_empty_channel_set(self, fields):
        """Should reject an alert with no notification method."""
        fields["notification_method"] = []
        with pytest.raises(AlertValidationError, match="notification method"):
            normalize_definition(fields)

    def test_rejects_unknown_channel(self, fields):
        """Should reject channels outside email/push/sms."""
        fields["notification_method"] = ["email", "fax"]
        with pytest.raises(AlertValidationError, match="fax"):
            normalize_definition(fields)

    def test_rejects_missing_fields(self):
        """Should list every missing required field."""
        with pytest.raises(AlertValidationError, match="cryptocurrency, condition"):
            normalize_definition({"type": "price", "threshold": 1})

    @pytest.mark.parametrize("condition", ["crosses_up", "crosses_down", "change_percent"])
    def test_technical_only_supports_above_below(self, fields, condition):
        """Should reject conditions not legal for technical alerts."""
        fields.update(type="technical", condition=condition)
        with pytest.raises(AlertValidationError, match="not supported"):
            normalize_definition(fields)

    def test_technical_defaults_to_rsi(self, fields):
        """Should default the technical indicator to RSI."""
        fields.update(type="technical", threshold=30)
        assert normalize_definition(fields)["metadata"] == {"technicalIndicator": "RSI"}

    def test_rejects_unknown_indicator(self, fields):
        """Should reject indicators that cannot be computed."""
        fields.update(type="technical", metadata={"technicalIndicator": "ADX"})
        with pytest.raises(AlertValidationError, match="ADX"):
            normalize_definition(fields)

    def test_every_type_supports_above_and_below(self):
        """Should allow above/below for every alert type."""
        for conditions in LEGAL_CONDITIONS.values():
            assert {"above", "below"} <= set(conditions)

    def test_triggered_requires_timestamp(self):
        """Should reject a triggered alert without triggered_at."""
        alert = Alert(
            user_id=1,
            type="price",
            cryptocurrency="bitcoin",
            condition="above",
            threshold=1,
            is_triggered=True,
        )
        with pytest.raises(AlertValidationError):
            validate_alert(alert)
