"""Tests for edge-triggered threshold alerts."""
from datetime import datetime

import pytest

from statsync.models import Alert
from statsync.services.notifications.alerts import evaluate, observe, threshold_payload


def _alert(**kwargs) -> Alert:
    defaults = dict(id=1, name="QB heater", entity_type="player", entity_id=7, season=2024,
                    scope="season", metric="passer_rating", operator="gt", value=95.0,
                    webhook_id=1, active=True, last_value=None, last_fired_at=None)
    defaults.update(kwargs)
    return Alert(**defaults)


class TestEvaluate:

    @pytest.mark.parametrize("op,value,expected", [
        ("gt", 96, True),
        ("gt", 95, False),
        ("gte", 95, True),
        ("lt", 94.9, True),
        ("lte", 95, True),
        ("eq", 95.0, True),
        ("eq", 95.1, False),
    ])
    def test_operators(self, op, value, expected):
        assert evaluate(op, value, 95) is expected

    def test_non_numeric_never_satisfies(self):
        assert evaluate("gt", None, 0) is False
        assert evaluate("lt", "12", 100) is False

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            evaluate("between", 1, 2)


class TestObserve:

    def test_fires_on_crossing_only(self):
        """Should fire once when the threshold is crossed, not while it stays crossed."""
        alert = _alert()
        now = datetime(2024, 11, 3, 20, 0)

        assert observe(alert, {"passer_rating": 90.0}, now) is False
        assert alert.last_value == 90.0
        assert observe(alert, {"passer_rating": 97.0}, now) is True
        assert alert.last_fired_at == now
        assert observe(alert, {"passer_rating": 99.0}) is False
        assert alert.last_fired_at == now

    def test_fires_again_after_falling_back(self):
        alert = _alert(last_value=97.0)

        assert observe(alert, {"passer_rating": 90.0}) is False
        assert observe(alert, {"passer_rating": 96.0}) is True

    def test_first_observation_already_satisfied_fires(self):
        assert observe(_alert(), {"passer_rating": 120.0}) is True

    def test_unrelated_metric_does_not_fire(self):
        alert = _alert(last_value=90.0)

        assert observe(alert, {"rushing_yards": 130}) is False
        assert alert.last_value == 90.0

    def test_unchanged_value_ignored(self):
        alert = _alert(operator="lt", value=50.0, last_value=40.0)

        assert observe(alert, {"passer_rating": 40.0}) is False

    def test_threshold_payload(self):
        alert = _alert(last_fired_at=datetime(2024, 11, 3, 20, 0))
        document = {"entity_type": "player", "entity_id": 7, "season": 2024, "scope": "season",
                    "metrics": {"passer_rating": 97.0}}

        payload = threshold_payload(alert, document)

        assert payload["alert"]["metric"] == "passer_rating"
        assert payload["metric_value"] == 97.0
        assert payload["entity_id"] == 7
        assert payload["fired_at"] == "2024-11-03T20:00:00"
