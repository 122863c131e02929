"""
Sport-specific derived formulas computed from aggregated season sums, and
the per-play expected points model.

Field names follow the provider's NFL per-game stat payloads.
"""
import math
from typing import Any, Dict, Mapping, Optional, Sequence

PASSER_COMPONENT_MIN = 0.0
PASSER_COMPONENT_MAX = 2.375


def _clamp(value: float, low: float = PASSER_COMPONENT_MIN, high: float = PASSER_COMPONENT_MAX) -> float:
    return max(low, min(value, high))


def passer_rating(
    completions: float,
    attempts: float,
    yards: float,
    touchdowns: float,
    interceptions: float,
) -> Optional[float]:
    """
    NFL passer rating.

    Each of the four components (completion %, yards per attempt, touchdown
    rate, interception rate) is clamped to [0, 2.375] before they are
    averaged and scaled to 100, so the result always lies in [0, 158.3].

    Returns:
        Rating rounded to 2 places, or None when there are no attempts
    """
    if not attempts or attempts <= 0:
        return None

    completion_component = _clamp(((completions / attempts) - 0.3) * 5)
    yards_component = _clamp(((yards / attempts) - 3) * 0.25)
    touchdown_component = _clamp((touchdowns / attempts) * 20)
    interception_component = _clamp(2.375 - ((interceptions / attempts) * 25))

    total = completion_component + yards_component + touchdown_component + interception_component
    return round((total / 6) * 100, 2)


def safe_ratio(numerator: Optional[float], denominator: Optional[float], scale: float = 1.0) -> Optional[float]:
    if numerator is None or not denominator:
        return None
    return round((numerator / denominator) * scale, 4)


def completion_pct(completions: Optional[float], attempts: Optional[float]) -> Optional[float]:
    return safe_ratio(completions, attempts, 100.0)


def yards_per_carry(rushing_yards: Optional[float], rushing_attempts: Optional[float]) -> Optional[float]:
    return safe_ratio(rushing_yards, rushing_attempts)


def catch_rate(receptions: Optional[float], targets: Optional[float]) -> Optional[float]:
    return safe_ratio(receptions, targets, 100.0)


def yards_per_reception(receiving_yards: Optional[float], receptions: Optional[float]) -> Optional[float]:
    return safe_ratio(receiving_yards, receptions)


def specific_metrics(sums: Mapping[str, float]) -> Dict[str, float]:
    """Apply every formula whose inputs are present in ``sums``."""
    specific: Dict[str, float] = {}

    attempts = sums.get("passing_attempts")
    if attempts:
        rating = passer_rating(
            completions=sums.get("passing_completions", 0),
            attempts=attempts,
            yards=sums.get("passing_yards", 0),
            touchdowns=sums.get("passing_touchdowns", 0),
            interceptions=sums.get("passing_interceptions", 0),
        )
        if rating is not None:
            specific["passer_rating"] = rating
        pct = completion_pct(sums.get("passing_completions"), attempts)
        if pct is not None:
            specific["completion_pct"] = pct

    candidates = {
        "yards_per_carry": yards_per_carry(sums.get("rushing_yards"), sums.get("rushing_attempts")),
        "catch_rate": catch_rate(sums.get("receptions"), sums.get("receiving_targets")),
        "yards_per_reception": yards_per_reception(sums.get("receiving_yards"), sums.get("receptions")),
    }
    specific.update({k: v for k, v in candidates.items() if v is not None})
    return specific


# =============================================================================
# EXPECTED POINTS
# =============================================================================

TOUCHDOWN_POINTS = 7.0
START_YARDLINE_FIELDS = ("yardline_number", "yardline", "yard_line")
END_YARDLINE_FIELDS = ("end_yardline_number", "end_yardline")


def expected_points(yardline: Any) -> Optional[float]:
    """
    Linear expected points for a snap ``yardline`` yards from the opponent's
    end zone (0..100): a touchdown's worth scaled by field position.
    """
    if yardline is None or isinstance(yardline, bool):
        return None
    try:
        distance = float(yardline)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(distance):
        return None
    return ((100 - distance) / 100) * TOUCHDOWN_POINTS


def _first_present(raw: Mapping[str, Any], fields: Sequence[str]) -> Any:
    for name in fields:
        if raw.get(name) is not None:
            return raw[name]
    return None


def play_epa(raw: Mapping[str, Any], next_raw: Optional[Mapping[str, Any]] = None) -> Optional[float]:
    """
    Expected points added by one play: EP after minus EP before.

    When the play has no end yardline, the next play's starting yardline is
    used instead. Returns None when either side is unknown.
    """
    if not isinstance(raw, Mapping):
        return None
    before = expected_points(_first_present(raw, START_YARDLINE_FIELDS))
    after = expected_points(_first_present(raw, END_YARDLINE_FIELDS))
    if after is None and isinstance(next_raw, Mapping):
        after = expected_points(_first_present(next_raw, START_YARDLINE_FIELDS))
    if before is None or after is None:
        return None
    return round(after - before, 3)
