"""Sync orchestrator for full-season and incremental pipeline runs.

This orchestrator coordinates, in dependency order:
- Core data (teams, players, games)
- Per-game stats (players and teams), which recompute canonical metrics
- Provider season metrics (team season stats per team, season stats,
  advanced rushing/passing/receiving)
- Per-game extras (plays, odds, player props) through the worker pool
- Injuries
- Derived data (play EPA, season re-merge, standings, matchups)

Every step returns a result dict with ``success`` and ``duration_ms``.
A failing step is recorded with its error and the run continues; a store
failure aborts the whole run.

Recommended schedule (see statsync.core.scheduler):
- injuries: every 30 minutes
- current-week games and stats: every 6 hours
- current-week odds: twice daily
- derived recompute: nightly
"""
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from statsync.core.exceptions import ProviderError, StoreUnavailableError
from statsync.core.logging import get_logger
from statsync.services.metrics.metrics_service import MetricsService
from statsync.services.standings.aggregator import StandingsAggregator
from statsync.services.sync.backfill import PER_GAME_ENTITIES, Backfiller
from statsync.services.sync.engine import ProgressCallback, SyncEngine

logger = get_logger(__name__)

ADVANCED_ENTITIES = ("advanced_rushing", "advanced_passing", "advanced_receiving")


class SyncOrchestrator:
    """
    Coordinates sync steps over the sync engine.

    This is the main entry point for scheduled and full-season runs.
    """

    def __init__(
        self,
        engine: SyncEngine,
        session_factory: sessionmaker,
        concurrency: int = 3,
        on_progress: Optional[ProgressCallback] = None,
    ):
        """
        Initialize the sync orchestrator.

        Args:
            engine: Paginated sync engine
            session_factory: Callable returning a new SQLAlchemy Session
            concurrency: Worker pool size for per-game and per-team backfills
            on_progress: Optional callback receiving page and step progress
        """
        self.engine = engine
        self.session_factory = session_factory
        self.backfiller = Backfiller(engine, session_factory, concurrency)
        self.on_progress = on_progress

    async def _step(self, name: str, action: Callable[[], Awaitable[Any]]) -> Dict[str, Any]:
        start_time = time.monotonic()
        logger.info(f"Starting step: {name}")
        try:
            outcome = await action()
        except StoreUnavailableError:
            logger.error(f"Step {name} aborted: store unavailable")
            raise
        except Exception as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            # Provider failures are expected; anything else gets a traceback
            logger.error(f"Step {name} failed: {e}", exc_info=not isinstance(e, ProviderError))
            result = {
                "step": name,
                "success": False,
                "error": str(e),
                "error_type": type(e).__name__,
                "duration_ms": duration_ms,
            }
            self._report(result)
            return result

        duration_ms = int((time.monotonic() - start_time) * 1000)
        result = {"step": name, "success": True, "duration_ms": duration_ms, "result": outcome}
        logger.info(f"Step {name} complete ({duration_ms}ms)")
        self._report(result)
        return result

    def _report(self, result: Dict[str, Any]) -> None:
        if self.on_progress:
            self.on_progress({"step": result["step"], "success": result["success"]})

    async def _sync(self, entity_type: str, filters: Optional[Dict[str, Any]] = None, **kwargs) -> Dict[str, Any]:
        result = await self.engine.sync_entity(entity_type, filters, on_page=self.on_progress, **kwargs)
        return result.to_dict()

    async def sync_core(self, season: int, week: Optional[int] = None) -> Dict[str, Any]:
        """Sync teams, players and the season's (or week's) games."""
        steps = [
            await self._step("teams", lambda: self._sync("teams")),
            await self._step("players", lambda: self._sync("players")),
            await self._step("games", lambda: self._sync("games", {"seasons": [season], "week": week})),
        ]
        return _summarize("core", steps)

    async def sync_stats(self, season: int, week: Optional[int] = None) -> Dict[str, Any]:
        """Sync per-game player and team stats; post-page hooks recompute metrics."""
        weeks = [week] if week is not None else None
        steps = [
            await self._step("stats", lambda: self._sync("stats", {"seasons": [season], "weeks": weeks})),
            await self._step("team_stats", lambda: self._sync("team_stats", {"seasons": [season]})),
        ]
        return _summarize("stats", steps)

    async def sync_provider_metrics(self, season: int, postseason: bool = False) -> Dict[str, Any]:
        """Sync provider-computed season metrics into canonical documents."""
        scoped = {"season": season, "postseason": postseason}

        async def team_season_stats():
            backfill = await self.backfiller.sync_per_team(
                "team_season_stats", season, extra_filters={"postseason": postseason}
            )
            return backfill.to_dict()

        steps = [
            await self._step("team_season_stats", team_season_stats),
            await self._step("season_stats", lambda: self._sync("season_stats", dict(scoped))),
        ]
        for entity_type in ADVANCED_ENTITIES:
            steps.append(await self._step(entity_type, lambda e=entity_type: self._sync(e, dict(scoped))))
        return _summarize("provider_metrics", steps)

    async def sync_game_extras(
        self,
        season: int,
        week: Optional[int] = None,
        entity_types: Iterable[str] = PER_GAME_ENTITIES,
    ) -> Dict[str, Any]:
        """Sync plays/odds/player props one game at a time (continue-on-error)."""
        game_ids = self.backfiller.game_ids_for(season, week)
        steps = []
        for entity_type in entity_types:
            async def per_game(e=entity_type):
                backfill = await self.backfiller.sync_per_game(e, game_ids)
                return backfill.to_dict()
            steps.append(await self._step(entity_type, per_game))
        summary = _summarize("game_extras", steps)
        summary["games"] = len(game_ids)
        return summary

    async def sync_odds(self, season: int, week: int) -> Dict[str, Any]:
        """Odds for one week, per game."""
        return await self.sync_game_extras(season, week, entity_types=("odds",))

    async def sync_injuries(self) -> Dict[str, Any]:
        # Injury reports are a current snapshot, so always read from the start
        step = await self._step("injuries", lambda: self._sync("injuries", resume=False))
        return _summarize("injuries", [step])

    def compute_derived(self, season: int, week: Optional[int] = None) -> Dict[str, Any]:
        """
        Recompute every derived table for a season in one transaction.

        Order: play EPA, computed sources, season re-merge, standings, matchups.
        """
        start_time = time.monotonic()
        session = self.session_factory()
        try:
            metrics = MetricsService(session, refresh_matchups=False)
            epa = metrics.compute_season_epa(season)
            recomputed = metrics.recompute_season(season)
            remerged = metrics.remerge_season(season)
            aggregator = StandingsAggregator(session)
            standings = aggregator.compute_standings(season)
            matchups = aggregator.compute_matchups(season, week)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreUnavailableError(f"Derived recompute for season {season} failed: {e}") from e
        finally:
            session.close()

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            f"Derived recompute for {season}: {epa['plays']} plays with EPA, {recomputed} recomputed, "
            f"{remerged} re-merged, {len(standings)} standings, {matchups} matchups ({duration_ms}ms)"
        )
        result = {
            "step": "derived",
            "success": True,
            "epa_plays": epa["plays"],
            "recomputed": recomputed,
            "remerged": remerged,
            "standings": len(standings),
            "matchups": matchups,
            "duration_ms": duration_ms,
        }
        self._report(result)
        return result

    async def run_full_season(
        self,
        season: int,
        include_extras: bool = False,
        include_injuries: bool = False,
    ) -> Dict[str, Any]:
        """Full pipeline for one season, in dependency order."""
        start_time = time.monotonic()
        logger.info(f"Full season run starting for {season}")

        phases = {
            "core": await self.sync_core(season),
            "stats": await self.sync_stats(season),
            "provider_metrics": await self.sync_provider_metrics(season),
        }
        phases["derived"] = self.compute_derived(season)
        if include_extras:
            phases["game_extras"] = await self.sync_game_extras(season)
        if include_injuries:
            phases["injuries"] = await self.sync_injuries()

        duration_ms = int((time.monotonic() - start_time) * 1000)
        success = all(phase["success"] for phase in phases.values())
        logger.info(f"Full season run for {season} finished (success={success}, {duration_ms}ms)")
        return {"season": season, "success": success, "duration_ms": duration_ms, "phases": phases}


def _summarize(name: str, steps: list) -> Dict[str, Any]:
    return {
        "phase": name,
        "success": all(step["success"] for step in steps),
        "duration_ms": sum(step["duration_ms"] for step in steps),
        "steps": {step["step"]: step for step in steps},
    }
