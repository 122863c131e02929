"""
Per-entity sync specifications.

Each ``EntitySpec`` tells the sync engine:
- which provider resource to page through
- which table to upsert into, and how to map an item to a row
- which filters make up the cursor key
- what to run after each page is written (metric producers)

Mappers return ``None`` for malformed items (no natural key); the engine
skips those without aborting the page. All rows from one mapper share the
same keys so a page can be written as a single multi-row upsert.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from statsync.core.exceptions import UnknownEntityError
from statsync.models import (
    AdvancedStat, Game, Injury, OddsLine, Play, Player, PlayerGameStat, PlayerProp,
    SeasonStat, Team, TeamGameStat, TeamSeasonStat,
)
from statsync.services.metrics.merge import is_number
from statsync.services.metrics.metrics_service import MetricsService, scope_for

Row = Dict[str, Any]
Mapper = Callable[[Mapping[str, Any], Mapping[str, Any]], Optional[Row]]
PostPage = Callable[[Session, List[Row], Mapping[str, Any]], None]


@dataclass(frozen=True)
class EntitySpec:
    name: str
    resource: str
    model: type
    mapper: Mapper
    # (filter name, label) pairs that identify an independently resumable job
    key_params: Tuple[Tuple[str, str], ...] = ()
    key_prefix: Optional[str] = None
    scoped: bool = False
    # Filter name used when one job runs per game (plays, odds, props)
    game_param: Optional[str] = None
    post_page: Optional[PostPage] = None
    default_filters: Mapping[str, Any] = field(default_factory=dict)

    def request_params(self, filters: Mapping[str, Any]) -> Dict[str, Any]:
        params = dict(self.default_filters)
        params.update({k: v for k, v in filters.items() if v is not None})
        return params


# =============================================================================
# HELPERS
# =============================================================================

def _nested_id(item: Mapping[str, Any], name: str) -> Optional[int]:
    """``item['<name>_id']`` or ``item['<name>']['id']``."""
    value = item.get(f"{name}_id")
    if value is None and isinstance(item.get(name), Mapping):
        value = item[name].get("id")
    return _as_int(value)


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _season(item: Mapping[str, Any], filters: Mapping[str, Any]) -> Optional[int]:
    game = item.get("game") if isinstance(item.get("game"), Mapping) else {}
    return _as_int(item.get("season") or game.get("season") or filters.get("season"))


def _week(item: Mapping[str, Any], filters: Mapping[str, Any]) -> Optional[int]:
    game = item.get("game") if isinstance(item.get("game"), Mapping) else {}
    return _as_int(item.get("week") or game.get("week") or filters.get("week"))


def _postseason(item: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    value = item.get("postseason", filters.get("postseason", False))
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


def _game_postseason(item: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    """Per-game rows carry the flag on the nested game object."""
    game = item.get("game") if isinstance(item.get("game"), Mapping) else {}
    if "postseason" in game:
        return _postseason(game, {})
    return _postseason(item, filters)


def _single_filter(filters: Mapping[str, Any], name: str) -> Optional[int]:
    """A per-game filter may be a scalar or a one-element list."""
    value = filters.get(name)
    if isinstance(value, (list, tuple)):
        value = value[0] if len(value) == 1 else None
    return _as_int(value)


def _flag(postseason: bool) -> str:
    return "post" if postseason else "reg"


# =============================================================================
# MAPPERS
# =============================================================================

def map_team(item, filters) -> Optional[Row]:
    team_id = _as_int(item.get("id"))
    if team_id is None:
        return None
    return {
        "natural_key": str(team_id),
        "provider_id": team_id,
        "abbreviation": item.get("abbreviation"),
        "full_name": item.get("full_name") or item.get("name"),
        "conference": item.get("conference"),
        "division": item.get("division"),
        "raw": dict(item),
    }


def map_player(item, filters) -> Optional[Row]:
    player_id = _as_int(item.get("id"))
    if player_id is None:
        return None
    return {
        "natural_key": str(player_id),
        "provider_id": player_id,
        "first_name": item.get("first_name"),
        "last_name": item.get("last_name"),
        "position": item.get("position") or item.get("position_abbreviation"),
        "team_id": _nested_id(item, "team"),
        "raw": dict(item),
    }


def map_game(item, filters) -> Optional[Row]:
    game_id = _as_int(item.get("id"))
    if game_id is None:
        return None
    return {
        "natural_key": str(game_id),
        "provider_id": game_id,
        "season": _season(item, filters),
        "week": _week(item, filters),
        "postseason": _postseason(item, filters),
        "status": item.get("status"),
        "game_date": item.get("date"),
        "home_team_id": _nested_id(item, "home_team"),
        "visitor_team_id": _nested_id(item, "visitor_team"),
        "home_score": _as_int(item.get("home_team_score")),
        "visitor_score": _as_int(item.get("visitor_team_score")),
        "raw": dict(item),
    }


def map_player_game_stat(item, filters) -> Optional[Row]:
    player_id = _nested_id(item, "player")
    game_id = _nested_id(item, "game")
    if player_id is None or game_id is None:
        return None
    return {
        "natural_key": f"{player_id}:{game_id}",
        "player_id": player_id,
        "game_id": game_id,
        "team_id": _nested_id(item, "team"),
        "season": _season(item, filters),
        "week": _week(item, filters),
        "postseason": _game_postseason(item, filters),
        "raw": dict(item),
    }


def map_team_game_stat(item, filters) -> Optional[Row]:
    team_id = _nested_id(item, "team")
    game_id = _nested_id(item, "game")
    if team_id is None or game_id is None:
        return None
    return {
        "natural_key": f"{team_id}:{game_id}",
        "team_id": team_id,
        "game_id": game_id,
        "season": _season(item, filters),
        "week": _week(item, filters),
        "postseason": _game_postseason(item, filters),
        "raw": dict(item),
    }


def map_team_season_stat(item, filters) -> Optional[Row]:
    team_id = _nested_id(item, "team")
    season = _season(item, filters)
    if team_id is None or season is None:
        return None
    postseason = _postseason(item, filters)
    return {
        "natural_key": f"{team_id}:{season}:{_flag(postseason)}",
        "team_id": team_id,
        "season": season,
        "postseason": postseason,
        "raw": dict(item),
    }


def map_season_stat(item, filters) -> Optional[Row]:
    player_id = _nested_id(item, "player")
    season = _season(item, filters)
    if player_id is None or season is None:
        return None
    postseason = _postseason(item, filters)
    return {
        "natural_key": f"{player_id}:{season}:{_flag(postseason)}",
        "player_id": player_id,
        "season": season,
        "postseason": postseason,
        "raw": dict(item),
    }


def advanced_mapper(stat_type: str) -> Mapper:
    def map_advanced(item, filters) -> Optional[Row]:
        player_id = _nested_id(item, "player")
        season = _season(item, filters)
        if player_id is None or season is None:
            return None
        week = _as_int(item.get("week")) or 0
        postseason = _postseason(item, filters)
        return {
            "natural_key": f"{stat_type}:{player_id}:{season}:{week}:{_flag(postseason)}",
            "stat_type": stat_type,
            "player_id": player_id,
            "season": season,
            "week": week,
            "postseason": postseason,
            "raw": dict(item),
        }
    return map_advanced


def map_play(item, filters) -> Optional[Row]:
    game_id = _nested_id(item, "game") or _single_filter(filters, "game_id")
    if game_id is None:
        return None
    play_id = _as_int(item.get("id"))
    sequence = _as_int(item.get("sequence"))
    if play_id is not None:
        natural_key = str(play_id)
    elif sequence is not None:
        natural_key = f"{game_id}:{sequence}"
    else:
        return None
    return {
        "natural_key": natural_key,
        "game_id": game_id,
        "sequence": sequence,
        "raw": dict(item),
    }


def map_odds(item, filters) -> Optional[Row]:
    game_id = _nested_id(item, "game") or _single_filter(filters, "game_ids")
    vendor = item.get("vendor")
    if game_id is None or not vendor:
        return None
    return {
        "natural_key": f"{game_id}:{vendor}",
        "game_id": game_id,
        "vendor": str(vendor),
        "raw": dict(item),
    }


def map_player_prop(item, filters) -> Optional[Row]:
    game_id = _nested_id(item, "game") or _single_filter(filters, "game_id")
    player_id = _nested_id(item, "player")
    vendor = item.get("vendor")
    prop_type = item.get("prop_type")
    if game_id is None or player_id is None or not vendor or not prop_type:
        return None
    line_value = item.get("line_value")
    if isinstance(line_value, str):
        try:
            line_value = float(line_value)
        except ValueError:
            line_value = None
    return {
        "natural_key": f"{game_id}:{player_id}:{vendor}:{prop_type}",
        "game_id": game_id,
        "player_id": player_id,
        "vendor": str(vendor),
        "prop_type": str(prop_type),
        "line_value": line_value if is_number(line_value) else None,
        "raw": dict(item),
    }


def map_injury(item, filters) -> Optional[Row]:
    player_id = _nested_id(item, "player")
    if player_id is None:
        return None
    report_date = item.get("date")
    return {
        "natural_key": f"{player_id}:{report_date or 'current'}",
        "player_id": player_id,
        "status": item.get("status"),
        "comment": item.get("comment"),
        "report_date": report_date,
        "raw": dict(item),
    }


# =============================================================================
# POST-PAGE HOOKS (metric producers)
# =============================================================================

def _compute_affected(entity_type: str, id_field: str) -> PostPage:
    def hook(db: Session, rows: List[Row], filters: Mapping[str, Any]) -> None:
        service = MetricsService(db)
        affected = {
            (row[id_field], row["season"], scope_for(row.get("postseason")))
            for row in rows if row.get("season") is not None
        }
        for entity_id, season, scope in sorted(affected):
            service.compute_entity(entity_type, entity_id, season, scope)
    return hook


def _apply_provider(entity_type: str, id_field: str) -> PostPage:
    def hook(db: Session, rows: List[Row], filters: Mapping[str, Any]) -> None:
        service = MetricsService(db)
        for row in rows:
            scope = scope_for(row.get("postseason"), row.get("week"))
            service.apply_provider(entity_type, row[id_field], row["season"], scope, row["raw"])
    return hook


# =============================================================================
# REGISTRY
# =============================================================================

_SEASON_WEEK = (("season", "season"), ("week", "week"))


def _advanced_spec(stat_type: str) -> EntitySpec:
    return EntitySpec(
        name=f"advanced_{stat_type}",
        resource=f"advanced_{stat_type}",
        model=AdvancedStat,
        mapper=advanced_mapper(stat_type),
        key_params=_SEASON_WEEK,
        scoped=True,
        post_page=_apply_provider("player", "player_id"),
    )


ENTITY_SPECS: Dict[str, EntitySpec] = {
    spec.name: spec
    for spec in (
        EntitySpec("teams", "teams", Team, map_team),
        EntitySpec("players", "players", Player, map_player, key_params=(("team_ids", "team"),)),
        EntitySpec("games", "games", Game, map_game, key_params=(("seasons", "season"),) + _SEASON_WEEK),
        EntitySpec(
            "stats", "stats", PlayerGameStat, map_player_game_stat,
            key_params=(("seasons", "season"), ("weeks", "week"), ("game_ids", "game")),
            post_page=_compute_affected("player", "player_id"),
        ),
        EntitySpec(
            "team_stats", "team_stats", TeamGameStat, map_team_game_stat,
            key_params=(("seasons", "season"), ("team_ids", "team"), ("game_ids", "game")),
            post_page=_compute_affected("team", "team_id"),
        ),
        EntitySpec(
            "team_season_stats", "team_season_stats", TeamSeasonStat, map_team_season_stat,
            key_params=(("season", "season"), ("team_ids", "team")),
            scoped=True,
            post_page=_apply_provider("team", "team_id"),
        ),
        EntitySpec(
            "season_stats", "season_stats", SeasonStat, map_season_stat,
            key_params=(("season", "season"), ("team_id", "team"), ("player_ids", "player")),
            scoped=True,
            post_page=_apply_provider("player", "player_id"),
        ),
        _advanced_spec("rushing"),
        _advanced_spec("passing"),
        _advanced_spec("receiving"),
        EntitySpec(
            "plays", "plays", Play, map_play,
            key_params=(("game_id", "game"),), key_prefix="plays_cursor", game_param="game_id",
        ),
        EntitySpec(
            "odds", "odds", OddsLine, map_odds,
            key_params=_SEASON_WEEK + (("game_ids", "game"),), key_prefix="odds_cursor", game_param="game_ids",
        ),
        EntitySpec(
            "player_props", "player_props", PlayerProp, map_player_prop,
            key_params=(("game_id", "game"), ("vendors", "vendor")), key_prefix="player_props_cursor",
            game_param="game_id",
        ),
        EntitySpec(
            "injuries", "injuries", Injury, map_injury,
            key_params=(("team_ids", "team"), ("player_ids", "player")),
        ),
    )
}


def get_spec(entity_type: str) -> EntitySpec:
    try:
        return ENTITY_SPECS[entity_type]
    except KeyError:
        raise UnknownEntityError(
            f"Unknown entity type '{entity_type}'. Known: {', '.join(sorted(ENTITY_SPECS))}"
        ) from None


def _key_value(value: Any) -> str:
    if isinstance(value, (list, tuple, set)):
        return "-".join(sorted(str(v) for v in value))
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_cursor_key(spec: EntitySpec, filters: Mapping[str, Any]) -> str:
    """
    Deterministic job key from the entity type and its stable filters.

    Examples:
        advanced_rushing_season_2024_scope_season
        plays_cursor_game_424150
    """
    parts: List[str] = [spec.key_prefix or spec.name]
    for param, label in spec.key_params:
        value = filters.get(param)
        if value is None or value == [] or value == ():
            continue
        parts.extend([label, _key_value(value)])
    if spec.scoped:
        parts.extend(["scope", scope_for(filters.get("postseason"))])
    return "_".join(parts)


def map_items(
    spec: EntitySpec,
    items: Sequence[Mapping[str, Any]],
    filters: Mapping[str, Any],
) -> Tuple[List[Row], int]:
    """Map a page of items to rows; returns (rows, skipped count)."""
    rows: List[Row] = []
    skipped = 0
    for item in items:
        row = spec.mapper(item, filters)
        if row is None:
            skipped += 1
            continue
        rows.append(row)
    return rows, skipped
