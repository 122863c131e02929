"""
Multi-unit backfills built on the sync engine and the worker pool.

Per-game resources (plays, odds, player props) get one cursor key per game;
per-team season stats get one key per team. Units that fail after the
client's retries are skipped with their cursor untouched, so the next run
retries them.
"""
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import sessionmaker

from statsync.core.logging import get_logger
from statsync.models import Game, Team
from statsync.services.sync.engine import SyncEngine
from statsync.services.sync.entities import get_spec
from statsync.services.sync.worker_pool import BackfillResult, WorkerPool

logger = get_logger(__name__)

PER_GAME_ENTITIES = ("plays", "odds", "player_props")


class Backfiller:
    def __init__(self, engine: SyncEngine, session_factory: sessionmaker, concurrency: int = 3):
        self.engine = engine
        self.session_factory = session_factory
        self.concurrency = concurrency

    def game_ids_for(self, season: int, week: Optional[int] = None) -> List[int]:
        with self.session_factory() as session:
            query = session.query(Game.provider_id).filter(Game.season == season)
            if week is not None:
                query = query.filter(Game.week == week)
            return [gid for (gid,) in query.order_by(Game.provider_id).all()]

    def team_ids(self) -> List[int]:
        with self.session_factory() as session:
            return [tid for (tid,) in session.query(Team.provider_id).order_by(Team.provider_id).all()]

    async def all_team_ids(self) -> List[int]:
        """Team ids from the store, syncing teams first if none are stored yet."""
        ids = self.team_ids()
        if not ids:
            await self.engine.sync_entity("teams", resume=False)
            ids = self.team_ids()
        return ids

    async def sync_per_game(
        self,
        entity_type: str,
        game_ids: Iterable[int],
        extra_filters: Optional[Mapping[str, Any]] = None,
        max_pages: Optional[int] = None,
        on_unit: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ) -> BackfillResult:
        """
        Sync a per-game resource for each game, continue-on-error.

        Returns:
            BackfillResult keyed by game id
        """
        spec = get_spec(entity_type)
        if spec.game_param is None:
            raise ValueError(f"Entity '{entity_type}' is not a per-game resource")

        def filters_for(game_id: int) -> Dict[str, Any]:
            filters = dict(extra_filters or {})
            filters[spec.game_param] = [game_id] if spec.game_param.endswith("s") else game_id
            return filters

        async def run_game(game_id: int) -> Dict[str, Any]:
            result = await self.engine.sync_entity(entity_type, filters_for(game_id), max_pages=max_pages)
            if on_unit:
                on_unit({"entity_type": entity_type, "game_id": game_id, **result.to_dict()})
            return result.to_dict()

        pool = WorkerPool(self.concurrency, name=f"{entity_type}_per_game")
        return await pool.run(list(game_ids), run_game)

    async def sync_per_team(
        self,
        entity_type: str,
        season: int,
        team_ids: Optional[Iterable[int]] = None,
        extra_filters: Optional[Mapping[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> BackfillResult:
        """Sync a team-filtered resource one team at a time, continue-on-error."""
        ids = list(team_ids) if team_ids is not None else await self.all_team_ids()

        async def run_team(team_id: int) -> Dict[str, Any]:
            filters = dict(extra_filters or {})
            filters.update({"season": season, "team_ids": [team_id]})
            result = await self.engine.sync_entity(entity_type, filters, max_pages=max_pages)
            return result.to_dict()

        pool = WorkerPool(self.concurrency, name=f"{entity_type}_per_team")
        return await pool.run(ids, run_team)
