"""
Producers and re-merge for canonical metric documents.

Two producers write into the same document:
- ``apply_provider`` folds a provider payload into ``sources.provider``
- ``compute_entity`` rebuilds ``sources.computed`` from raw per-game rows

Both immediately re-merge the affected document. Team re-merges also
refresh the matchups that reference the team.

``compute_game_epa`` and ``compute_season_epa`` write expected points added
on each synced play.
"""
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from statsync.core.logging import get_logger
from statsync.models import CanonicalMetric, Game, Play, PlayerGameStat, TeamGameStat
from statsync.services.metrics.formulas import play_epa
from statsync.services.metrics.merge import build_computed, flatten_provider_payload, merge_metrics
from statsync.services.standings.aggregator import StandingsAggregator

logger = get_logger(__name__)

ENTITY_TYPES = ("player", "team")

_PER_GAME_MODELS = {
    "player": (PlayerGameStat, PlayerGameStat.player_id),
    "team": (TeamGameStat, TeamGameStat.team_id),
}


def scope_for(postseason: Any = False, week: Optional[int] = None) -> str:
    """Scope label: a weekly slice, the postseason, or the regular season."""
    if week:
        return f"week_{int(week)}"
    return "postseason" if postseason else "season"


class MetricsService:
    """Writes both sources of canonical documents. Flushes, never commits."""

    def __init__(self, db: Session, refresh_matchups: bool = True):
        self.db = db
        self.refresh_matchups = refresh_matchups

    def get_document(self, entity_type: str, entity_id: int, season: int, scope: str = "season") -> Optional[CanonicalMetric]:
        return (
            self.db.query(CanonicalMetric)
            .filter_by(entity_type=entity_type, entity_id=entity_id, season=season, scope=scope)
            .first()
        )

    def _get_or_create(self, entity_type: str, entity_id: int, season: int, scope: str) -> CanonicalMetric:
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unsupported entity type: {entity_type}")
        doc = self.get_document(entity_type, entity_id, season, scope)
        if doc is None:
            doc = CanonicalMetric(
                entity_type=entity_type,
                entity_id=entity_id,
                season=season,
                scope=scope,
                sources={"provider": {}, "computed": {}},
                metrics={},
                game_count=0,
            )
            self.db.add(doc)
        return doc

    def apply_provider(
        self,
        entity_type: str,
        entity_id: int,
        season: int,
        scope: str,
        payload: Mapping[str, Any],
    ) -> CanonicalMetric:
        """Fold a provider payload into ``sources.provider`` and re-merge."""
        doc = self._get_or_create(entity_type, entity_id, season, scope)
        sources = dict(doc.sources or {})
        provider = dict(sources.get("provider") or {})
        provider.update(flatten_provider_payload(payload))
        sources["provider"] = provider
        doc.sources = sources
        return self._merge(doc)

    def compute_entity(self, entity_type: str, entity_id: int, season: int, scope: str = "season") -> CanonicalMetric:
        """Rebuild ``sources.computed`` from the per-game rows the scope covers.

        ``season`` and ``week_N`` count regular-season games only;
        ``postseason`` counts playoff games only.
        """
        model, entity_col = _PER_GAME_MODELS[entity_type]
        query = self.db.query(model.raw).filter(entity_col == entity_id, model.season == season)
        rows = _filter_scope(query, model, scope).all()
        computed, game_count = build_computed(raw for (raw,) in rows if raw)

        doc = self._get_or_create(entity_type, entity_id, season, scope)
        sources = dict(doc.sources or {})
        sources["computed"] = computed
        doc.sources = sources
        doc.game_count = game_count
        return self._merge(doc)

    def remerge(self, entity_type: str, entity_id: int, season: int, scope: str = "season") -> Optional[CanonicalMetric]:
        doc = self.get_document(entity_type, entity_id, season, scope)
        if doc is None:
            return None
        return self._merge(doc)

    def remerge_season(self, season: int) -> int:
        """Re-merge every document of a season (bulk recovery sweep)."""
        docs = self.db.query(CanonicalMetric).filter(CanonicalMetric.season == season).all()
        for doc in docs:
            self._merge(doc, refresh=False)
        self.db.flush()
        logger.info(f"Re-merged {len(docs)} canonical documents for season {season}")
        return len(docs)

    def recompute_season(self, season: int) -> int:
        """Rebuild ``sources.computed`` for every (entity, scope) with rows this season."""
        count = 0
        for entity_type, (model, entity_col) in _PER_GAME_MODELS.items():
            pairs = (
                self.db.query(entity_col, model.postseason)
                .filter(model.season == season)
                .distinct()
                .all()
            )
            for entity_id, postseason in pairs:
                self.compute_entity(entity_type, entity_id, season, scope_for(postseason))
                count += 1
        self.db.flush()
        logger.info(f"Recomputed {count} entities for season {season}")
        return count

    def compute_game_epa(self, game_id: int) -> int:
        """Write ``epa`` on every play of a game with enough field position data."""
        plays = (
            self.db.query(Play)
            .filter(Play.game_id == game_id)
            .order_by(Play.sequence, Play.id)
            .all()
        )
        processed = 0
        for index, play in enumerate(plays):
            next_raw = plays[index + 1].raw if index + 1 < len(plays) else None
            epa = play_epa(play.raw or {}, next_raw)
            if epa is None:
                continue
            play.epa = epa
            processed += 1
        self.db.flush()
        return processed

    def compute_season_epa(self, season: int) -> Dict[str, int]:
        game_ids = [game_id for (game_id,) in self.db.query(Game.provider_id).filter(Game.season == season).all()]
        processed = sum(self.compute_game_epa(game_id) for game_id in game_ids)
        logger.info(f"Computed EPA for {processed} plays across {len(game_ids)} games in season {season}")
        return {"games": len(game_ids), "plays": processed}

    def _merge(self, doc: CanonicalMetric, refresh: bool = True) -> CanonicalMetric:
        doc.metrics = merge_metrics(doc.sources or {})
        doc.updated_at = datetime.utcnow()
        self.db.flush()
        if refresh and self.refresh_matchups and doc.entity_type == "team" and doc.scope == "season":
            StandingsAggregator(self.db).refresh_matchups_for_team(doc.entity_id, doc.season)
        return doc


def _filter_scope(query, model, scope: str):
    if scope == "postseason":
        return query.filter(model.postseason.is_(True))
    query = query.filter(model.postseason.is_(False))
    if scope.startswith("week_"):
        query = query.filter(model.week == int(scope[len("week_"):]))
    return query


def document_to_dict(doc: CanonicalMetric) -> Dict[str, Any]:
    return {
        "entity_type": doc.entity_type,
        "entity_id": doc.entity_id,
        "season": doc.season,
        "scope": doc.scope,
        "sources": doc.sources or {},
        "metrics": doc.metrics or {},
        "game_count": doc.game_count,
        "updated_at": doc.updated_at.isoformat() if doc.updated_at else None,
    }
