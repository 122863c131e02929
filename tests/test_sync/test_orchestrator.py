"""Integration tests for SyncOrchestrator.

Test Strategy:
1. sync_core() runs teams, players, games in order
2. A provider failure marks its step failed and the phase continues
3. A store failure aborts the run
4. compute_derived() rebuilds standings and matchups
5. run_full_season() reports every phase
"""
import pytest
from sqlalchemy.exc import OperationalError

from statsync.core.exceptions import StoreUnavailableError
from statsync.models import CanonicalMetric, Game, Matchup, Play, Standing
from statsync.services.sync.engine import SyncEngine
from statsync.services.sync.orchestrator import SyncOrchestrator


def _games():
    return [
        {"id": 11, "season": 2024, "week": 1, "status": "Final", "home_team": {"id": 1},
         "visitor_team": {"id": 2}, "home_team_score": 21, "visitor_team_score": 14},
        {"id": 12, "season": 2024, "week": 1, "status": "Final", "home_team_id": 3,
         "visitor_team_id": 4, "home_team_score": 3, "visitor_team_score": 6},
    ]


class TestSyncOrchestrator:

    # sync_core() Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_sync_core_success(self, sync_engine, provider, session_factory):
        provider.serve("teams", [{"id": n} for n in range(1, 5)])
        provider.serve("players", [{"id": 7, "first_name": "Pat", "team": {"id": 1}}])
        provider.serve("games", _games())
        progress = []
        orchestrator = SyncOrchestrator(sync_engine, session_factory, on_progress=progress.append)

        result = await orchestrator.sync_core(2024, week=1)

        assert result["success"] is True
        assert list(result["steps"]) == ["teams", "players", "games"]
        assert result["steps"]["games"]["result"]["upserted"] == 2
        assert "duration_ms" in result
        assert {"step": "games", "success": True} in progress

        games_request = provider.requests_for("games")[0]
        assert games_request.url.params.get_list("seasons[]") == ["2024"]
        assert games_request.url.params["week"] == "1"
        with session_factory() as session:
            game = session.query(Game).filter_by(provider_id=11).one()
            assert (game.home_team_id, game.visitor_team_id, game.home_score) == (1, 2, 21)

    @pytest.mark.asyncio
    async def test_provider_failure_continues(self, sync_engine, provider, session_factory):
        """Should record the failed step and still run the remaining steps."""
        provider.serve("teams", [{"id": 1}])
        provider.fail("players", 401)
        provider.serve("games", _games())
        orchestrator = SyncOrchestrator(sync_engine, session_factory)

        result = await orchestrator.sync_core(2024)

        assert result["success"] is False
        assert result["steps"]["players"]["success"] is False
        assert "401" in result["steps"]["players"]["error"]
        assert result["steps"]["games"]["success"] is True

    @pytest.mark.asyncio
    async def test_unexpected_step_error_continues(self, sync_engine, provider, session_factory, monkeypatch):
        """A bug in one step is recorded on that step; later steps still run."""
        provider.serve("teams", [{"id": 1}])
        provider.serve("games", _games())
        real_sync = sync_engine.sync_entity

        async def flaky(entity_type, *args, **kwargs):
            if entity_type == "players":
                raise KeyError("position")
            return await real_sync(entity_type, *args, **kwargs)

        monkeypatch.setattr(sync_engine, "sync_entity", flaky)
        orchestrator = SyncOrchestrator(sync_engine, session_factory)

        result = await orchestrator.sync_core(2024)

        assert result["success"] is False
        assert result["steps"]["players"]["success"] is False
        assert result["steps"]["players"]["error_type"] == "KeyError"
        assert result["steps"]["games"]["success"] is True

    @pytest.mark.asyncio
    async def test_store_failure_aborts(self, provider_client):
        def broken_factory():
            raise OperationalError("SELECT", {}, Exception("database is down"))

        engine = SyncEngine(broken_factory, provider_client, page_delay=0)
        orchestrator = SyncOrchestrator(engine, broken_factory)

        with pytest.raises(StoreUnavailableError):
            await orchestrator.sync_core(2024)

    # compute_derived() Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_compute_derived(self, sync_engine, session_factory, db_session, sample_games):
        db_session.add(CanonicalMetric(
            entity_type="team", entity_id=1, season=2024, scope="season",
            sources={"provider": {"points_per_game": 22.0}, "computed": {}},
            metrics={}, game_count=0,
        ))
        db_session.add(Play(natural_key="101:1", game_id=101, sequence=1,
                            raw={"yardline_number": 75, "end_yardline_number": 65}))
        db_session.commit()
        progress = []
        orchestrator = SyncOrchestrator(sync_engine, session_factory, on_progress=progress.append)

        result = orchestrator.compute_derived(2024)

        assert result["success"] is True
        assert result["epa_plays"] == 1
        assert result["remerged"] == 1
        assert result["standings"] == 3
        assert result["matchups"] == 5
        assert progress == [{"step": "derived", "success": True}]
        with session_factory() as session:
            assert session.query(Standing).count() == 3
            doc = session.query(CanonicalMetric).filter_by(entity_id=1).one()
            assert doc.metrics == {"points_per_game": 22.0}
            matchup = session.query(Matchup).filter_by(provider_game_id=101).one()
            assert matchup.comparison["points_per_game"] == {"home": 22.0, "visitor": 0, "diff": 22.0}

    # run_full_season() Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_run_full_season(self, sync_engine, provider, session_factory):
        provider.serve("teams", [{"id": 1}, {"id": 2}])
        provider.serve("games", _games()[:1])
        provider.serve("stats", [{
            "player": {"id": 7}, "team": {"id": 1}, "game": {"id": 11, "season": 2024, "week": 1},
            "rushing_attempts": 10, "rushing_yards": 55,
        }])
        provider.serve("advanced_stats/rushing", [{"player": {"id": 7}, "season": 2024, "avg_time_to_los": 2.7}])
        orchestrator = SyncOrchestrator(sync_engine, session_factory)

        result = await orchestrator.run_full_season(2024)

        assert result["success"] is True
        assert list(result["phases"]) == ["core", "stats", "provider_metrics", "derived"]
        assert result["phases"]["derived"]["standings"] == 2
        with session_factory() as session:
            doc = session.query(CanonicalMetric).filter_by(entity_type="player", entity_id=7).one()
            assert doc.metrics["rushing_yards"] == 55
            assert doc.metrics["yards_per_carry"] == 5.5
            assert doc.metrics["avg_time_to_los"] == 2.7

    @pytest.mark.asyncio
    async def test_sync_game_extras_counts_games(self, sync_engine, provider, session_factory, sample_games):
        orchestrator = SyncOrchestrator(sync_engine, session_factory)

        result = await orchestrator.sync_odds(2024, week=1)

        assert result["games"] == 1
        assert result["success"] is True
        assert result["steps"]["odds"]["result"]["succeeded"] == 1
