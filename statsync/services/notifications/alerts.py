"""
Threshold alert evaluation.

Alerts are edge-triggered: an alert fires when its condition holds for the
newly observed metric value but did not hold for the previously observed
one. Updates that leave the alert's metric absent or unchanged are ignored.
"""
import operator
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from statsync.models import Alert
from statsync.services.metrics.merge import is_number

OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "eq": operator.eq,
}


def evaluate(op: str, metric_value: Any, threshold: float) -> bool:
    """Apply ``op`` to a metric value; non-numeric values never satisfy."""
    try:
        compare = OPERATORS[op]
    except KeyError:
        raise ValueError(f"Unsupported alert operator '{op}'") from None
    if not is_number(metric_value):
        return False
    return compare(metric_value, threshold)


def observe(alert: Alert, metrics: Mapping[str, Any], now: Optional[datetime] = None) -> bool:
    """
    Record a new metric observation on ``alert`` and decide whether it fires.

    Mutates ``alert.last_value`` and, when firing, ``alert.last_fired_at``.

    Returns:
        True when the condition crossed from unsatisfied to satisfied
    """
    value = metrics.get(alert.metric)
    if not is_number(value):
        return False
    if alert.last_value is not None and value == alert.last_value:
        return False

    previously_met = alert.last_value is not None and evaluate(alert.operator, alert.last_value, alert.value)
    alert.last_value = value

    if evaluate(alert.operator, value, alert.value) and not previously_met:
        alert.last_fired_at = now or datetime.utcnow()
        return True
    return False


def threshold_payload(alert: Alert, document: Mapping[str, Any]) -> Dict[str, Any]:
    metrics = document.get("metrics") or {}
    return {
        "alert": {
            "id": alert.id,
            "name": alert.name,
            "metric": alert.metric,
            "operator": alert.operator,
            "value": alert.value,
        },
        "entity_type": document.get("entity_type"),
        "entity_id": document.get("entity_id"),
        "season": document.get("season"),
        "scope": document.get("scope"),
        "metric_value": metrics.get(alert.metric),
        "fired_at": alert.last_fired_at.isoformat() if alert.last_fired_at else None,
    }
