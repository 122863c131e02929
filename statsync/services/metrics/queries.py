"""
Read-side helpers for a route layer: canonical documents, standings, matchups.

All functions return plain dicts (JSON-ready) or None when nothing matches.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from statsync.models import CanonicalMetric, Matchup, Standing
from statsync.services.metrics.metrics_service import document_to_dict


def get_metrics(
    db: Session,
    entity_type: str,
    entity_id: int,
    season: int,
    scope: str = "season",
) -> Optional[Dict[str, Any]]:
    doc = (
        db.query(CanonicalMetric)
        .filter_by(entity_type=entity_type, entity_id=entity_id, season=season, scope=scope)
        .first()
    )
    return document_to_dict(doc) if doc else None


def list_season_metrics(
    db: Session,
    entity_type: str,
    season: int,
    scope: str = "season",
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    query = (
        db.query(CanonicalMetric)
        .filter_by(entity_type=entity_type, season=season, scope=scope)
        .order_by(CanonicalMetric.entity_id)
    )
    if limit:
        query = query.limit(limit)
    return [document_to_dict(doc) for doc in query.all()]


def get_standings(db: Session, season: int) -> List[Dict[str, Any]]:
    """Standings ordered by win percentage, then point differential."""
    rows = db.query(Standing).filter(Standing.season == season).all()
    rows.sort(key=lambda s: (s.win_pct, s.points_for - s.points_against), reverse=True)
    return [
        {
            "team_id": s.team_id,
            "season": s.season,
            "wins": s.wins,
            "losses": s.losses,
            "ties": s.ties,
            "games_played": s.games_played,
            "points_for": s.points_for,
            "points_against": s.points_against,
            "win_pct": s.win_pct,
        }
        for s in rows
    ]


def get_matchup(db: Session, provider_game_id: int) -> Optional[Dict[str, Any]]:
    m = db.query(Matchup).filter(Matchup.provider_game_id == provider_game_id).first()
    if m is None:
        return None
    return {
        "game_id": m.provider_game_id,
        "season": m.season,
        "week": m.week,
        "home_team_id": m.home_team_id,
        "visitor_team_id": m.visitor_team_id,
        "home_metrics": m.home_metrics or {},
        "visitor_metrics": m.visitor_metrics or {},
        "comparison": m.comparison or {},
    }
