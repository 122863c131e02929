"""
Standings and matchup aggregation.

Standings are a materialized view over completed games: every call deletes
and rebuilds the season's rows so repeated runs never drift. Matchups
compare the two teams' canonical metrics for a game on a fixed key set.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from statsync.core.logging import get_logger
from statsync.models import CanonicalMetric, Game, Matchup, Standing
from statsync.repositories.base import bulk_upsert
from statsync.services.metrics.merge import is_number

logger = get_logger(__name__)

COMPARISON_KEYS = (
    "points_per_game",
    "total_yards_per_game",
    "passing_yards_per_game",
    "rushing_yards_per_game",
    "first_downs_per_game",
    "turnovers_per_game",
)


@dataclass
class TeamRecord:
    team_id: int
    wins: int = 0
    losses: int = 0
    ties: int = 0
    points_for: int = 0
    points_against: int = 0

    @property
    def games_played(self) -> int:
        return self.wins + self.losses + self.ties

    @property
    def win_pct(self) -> float:
        if not self.games_played:
            return 0.0
        return round((self.wins + 0.5 * self.ties) / self.games_played, 4)


def is_completed(game: Game) -> bool:
    """A game counts once both scores are in and it is not marked in progress."""
    if game.home_score is None or game.visitor_score is None:
        return False
    if not game.status:
        return True
    return "final" in game.status.lower()


def accumulate_records(games: Iterable[Game]) -> Dict[int, TeamRecord]:
    records: Dict[int, TeamRecord] = {}
    for game in games:
        if game.home_team_id is None or game.visitor_team_id is None:
            continue
        home = records.setdefault(game.home_team_id, TeamRecord(game.home_team_id))
        visitor = records.setdefault(game.visitor_team_id, TeamRecord(game.visitor_team_id))

        home.points_for += game.home_score
        home.points_against += game.visitor_score
        visitor.points_for += game.visitor_score
        visitor.points_against += game.home_score

        if game.home_score > game.visitor_score:
            home.wins += 1
            visitor.losses += 1
        elif game.home_score < game.visitor_score:
            visitor.wins += 1
            home.losses += 1
        else:
            home.ties += 1
            visitor.ties += 1
    return records


def build_comparison(
    home: Mapping[str, object],
    visitor: Mapping[str, object],
    keys: Sequence[str] = COMPARISON_KEYS,
) -> Dict[str, Dict[str, float]]:
    """``{key: {home, visitor, diff}}`` with missing values treated as 0."""
    comparison = {}
    for key in keys:
        home_value = home.get(key) if is_number(home.get(key)) else 0
        visitor_value = visitor.get(key) if is_number(visitor.get(key)) else 0
        comparison[key] = {
            "home": home_value,
            "visitor": visitor_value,
            "diff": round(home_value - visitor_value, 4),
        }
    return comparison


class StandingsAggregator:
    """Derives standings and matchups from games and canonical metrics."""

    def __init__(self, db: Session, comparison_keys: Sequence[str] = COMPARISON_KEYS):
        self.db = db
        self.comparison_keys = tuple(comparison_keys)

    def compute_standings(self, season: int, include_postseason: bool = False) -> List[Standing]:
        """
        Rebuild every Standing for ``season`` from completed games.

        Postseason games are excluded unless ``include_postseason`` is set.
        Flushes but does not commit.
        """
        query = self.db.query(Game).filter(Game.season == season)
        if not include_postseason:
            query = query.filter(Game.postseason.is_(False))
        games = [g for g in query.all() if is_completed(g)]
        records = accumulate_records(games)

        self.db.query(Standing).filter(Standing.season == season).delete(synchronize_session=False)
        now = datetime.utcnow()
        standings = [
            Standing(
                team_id=rec.team_id,
                season=season,
                wins=rec.wins,
                losses=rec.losses,
                ties=rec.ties,
                games_played=rec.games_played,
                points_for=rec.points_for,
                points_against=rec.points_against,
                win_pct=rec.win_pct,
                updated_at=now,
            )
            for rec in sorted(records.values(), key=lambda r: r.team_id)
        ]
        self.db.add_all(standings)
        self.db.flush()

        logger.info(f"Standings recomputed for season {season}: {len(standings)} teams from {len(games)} games")
        return standings

    def compute_matchups(self, season: int, week: Optional[int] = None) -> int:
        """Recompute matchups for every game of a season (or one week)."""
        query = self.db.query(Game).filter(Game.season == season)
        if week is not None:
            query = query.filter(Game.week == week)
        count = self._write_matchups(query.all(), season)
        logger.info(f"Matchups recomputed for season {season} week {week or 'all'}: {count}")
        return count

    def refresh_matchups_for_team(self, team_id: int, season: int) -> int:
        """Recompute matchups touching one team after its metrics changed."""
        games = (
            self.db.query(Game)
            .filter(
                Game.season == season,
                or_(Game.home_team_id == team_id, Game.visitor_team_id == team_id),
            )
            .all()
        )
        return self._write_matchups(games, season)

    def _team_metrics(self, season: int, team_ids: Iterable[int]) -> Dict[int, dict]:
        ids = {t for t in team_ids if t is not None}
        if not ids:
            return {}
        docs = (
            self.db.query(CanonicalMetric)
            .filter(
                CanonicalMetric.entity_type == "team",
                CanonicalMetric.season == season,
                CanonicalMetric.scope == "season",
                CanonicalMetric.entity_id.in_(ids),
            )
            .all()
        )
        return {doc.entity_id: dict(doc.metrics or {}) for doc in docs}

    def _write_matchups(self, games: Sequence[Game], season: int) -> int:
        if not games:
            return 0
        metrics = self._team_metrics(
            season, [g.home_team_id for g in games] + [g.visitor_team_id for g in games]
        )
        now = datetime.utcnow()
        rows = []
        for game in games:
            home = metrics.get(game.home_team_id, {})
            visitor = metrics.get(game.visitor_team_id, {})
            rows.append({
                "provider_game_id": game.provider_id,
                "season": game.season,
                "week": game.week,
                "home_team_id": game.home_team_id,
                "visitor_team_id": game.visitor_team_id,
                "home_metrics": home,
                "visitor_metrics": visitor,
                "comparison": build_comparison(home, visitor, self.comparison_keys),
                "updated_at": now,
            })
        return bulk_upsert(self.db, Matchup, rows, conflict_cols=("provider_game_id",))
