"""
Pure aggregation and merge functions for canonical metric documents.

A document's ``sources`` has two independently written halves:

- ``provider``: numeric fields reported by the provider (season stats,
  advanced stats); treated as ground truth when present
- ``computed``: sums and per-game averages over raw per-game rows, plus a
  ``specific`` map of derived formulas

``merge_metrics`` is the only way ``metrics`` is produced, so a document can
always be rebuilt from its sources.
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Tuple

from statsync.services.metrics.formulas import specific_metrics

SPECIFIC_KEY = "specific"
PER_GAME_SUFFIX = "_per_game"

# Identifier-like fields that are numeric but not statistics
IGNORED_FIELDS = frozenset({
    "id",
    "game_id",
    "player_id",
    "team_id",
    "season",
    "week",
    "postseason",
    "jersey_number",
})


@dataclass
class Aggregate:
    sums: Dict[str, float] = field(default_factory=dict)
    averages: Dict[str, float] = field(default_factory=dict)
    game_count: int = 0


def is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def numeric_fields(payload: Mapping[str, Any]) -> Dict[str, float]:
    """Top-level numeric statistics of a payload; everything else is ignored."""
    if not isinstance(payload, Mapping):
        return {}
    return {
        key: value
        for key, value in payload.items()
        if key not in IGNORED_FIELDS and is_number(value)
    }


def aggregate_rows(rows: Iterable[Mapping[str, Any]]) -> Aggregate:
    """Field-wise sums over rows, and averages as sum / game_count."""
    agg = Aggregate()
    for row in rows:
        agg.game_count += 1
        for key, value in numeric_fields(row).items():
            agg.sums[key] = agg.sums.get(key, 0) + value

    if agg.game_count:
        agg.averages = {k: round(v / agg.game_count, 4) for k, v in agg.sums.items()}
    return agg


def build_computed(rows: Iterable[Mapping[str, Any]]) -> Tuple[Dict[str, Any], int]:
    """
    Build the ``computed`` source from raw per-game rows.

    Returns:
        (computed map, game count). The map holds each summed field under its
        own name, each average under ``<field>_per_game``, and formulas under
        ``specific``.
    """
    agg = aggregate_rows(rows)
    computed: Dict[str, Any] = dict(agg.sums)
    computed.update({f"{k}{PER_GAME_SUFFIX}": v for k, v in agg.averages.items()})
    computed[SPECIFIC_KEY] = specific_metrics(agg.sums)
    return computed, agg.game_count


def flatten_provider_payload(payload: Mapping[str, Any]) -> Dict[str, float]:
    """Provider metrics as stored in ``sources.provider``: numeric scalars only."""
    return numeric_fields(payload)


def merge_metrics(sources: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Reconcile provider and computed sources into one metrics map.

    Precedence:
    1. computed values form the base
    2. provider values overwrite any key they share
    3. computed ``specific`` values fill keys still missing
    """
    sources = sources or {}
    computed = dict(sources.get("computed") or {})
    specific = computed.pop(SPECIFIC_KEY, None) or {}
    provider = sources.get("provider") or {}

    merged: Dict[str, Any] = dict(computed)
    merged.update(provider)
    for key, value in specific.items():
        merged.setdefault(key, value)
    return merged
