"""
HTTP endpoint integration tests for the statsync admin API.

These tests verify that FastAPI endpoints:
- Return correct HTTP status codes
- Validate request bodies
- Stream job progress as server-sent events
- Manage cursors, webhooks and alerts
"""
import pytest
from httpx import AsyncClient


def _sse_events(body: str):
    """Parse an event-stream body into (event, data) pairs."""
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], lines["data"]))
    return events


# =============================================================================
# HEALTH
# =============================================================================

class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, api_client: AsyncClient):
        response = await api_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["database"]["status"] == "connected"
        assert data["components"]["notifier"] == {"running": False, "mode": None}
        assert data["components"]["jobs"]["tracked"] == 0

    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, api_client: AsyncClient):
        response = await api_client.get("/health", headers={"X-Correlation-ID": "abc-123"})

        assert response.headers["X-Correlation-ID"] == "abc-123"


# =============================================================================
# SYNC JOBS
# =============================================================================

class TestSyncJobs:

    @pytest.mark.asyncio
    async def test_job_streams_progress(self, api_client: AsyncClient, provider):
        provider.serve("teams", [{"id": 1}, {"id": 2}], [{"id": 3}])

        response = await api_client.post("/api/sync/jobs", json={"entity_type": "teams"})
        assert response.status_code == 202
        job_id = response.json()["job_id"]

        stream = await api_client.get(f"/api/sync/jobs/{job_id}/events")

        assert stream.status_code == 200
        assert stream.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(stream.text)
        assert [name for name, _ in events] == ["progress", "progress", "complete", "done"]
        assert '"upserted": 3' in events[2][1]

        job = (await api_client.get(f"/api/sync/jobs/{job_id}")).json()
        assert job["status"] == "completed"
        assert job["result"]["pages"] == 2

        listing = (await api_client.get("/api/sync/jobs")).json()
        assert listing["count"] == 1

    @pytest.mark.asyncio
    async def test_failed_job_streams_error(self, api_client: AsyncClient, provider):
        provider.fail("players", 403)

        response = await api_client.post("/api/sync/jobs", json={"entity_type": "players", "max_pages": 5})
        stream = await api_client.get(f"/api/sync/jobs/{response.json()['job_id']}/events")

        assert [name for name, _ in _sse_events(stream.text)] == ["error", "done"]

    @pytest.mark.asyncio
    async def test_per_game_job_without_game_backfills_season(self, api_client: AsyncClient, provider,
                                                             db_session, sample_games):
        provider.serve("plays", [{"sequence": 1}, {"sequence": 2}])

        response = await api_client.post(
            "/api/sync/jobs", json={"entity_type": "plays", "filters": {"season": 2024, "week": 1}}
        )
        stream = await api_client.get(f"/api/sync/jobs/{response.json()['job_id']}/events")

        events = _sse_events(stream.text)
        assert events[-2][0] == "complete"
        assert '"succeeded": 1' in events[-2][1]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"entity_type": "curling"},
        {"entity_type": "plays"},
        {"entity_type": "derived"},
        {"entity_type": "full_season", "filters": {"week": 2}},
    ])
    async def test_invalid_job_requests(self, api_client: AsyncClient, body):
        response = await api_client.post("/api/sync/jobs", json=body)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_max_pages(self, api_client: AsyncClient):
        response = await api_client.post("/api/sync/jobs", json={"entity_type": "teams", "max_pages": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_job(self, api_client: AsyncClient):
        assert (await api_client.get("/api/sync/jobs/nope")).status_code == 404
        assert (await api_client.get("/api/sync/jobs/nope/events")).status_code == 404

    @pytest.mark.asyncio
    async def test_derived_job(self, api_client: AsyncClient, db_session, sample_games):
        response = await api_client.post("/api/sync/jobs", json={"entity_type": "derived", "filters": {"season": 2024}})
        stream = await api_client.get(f"/api/sync/jobs/{response.json()['job_id']}/events")

        events = _sse_events(stream.text)
        assert [name for name, _ in events] == ["progress", "complete", "done"]
        assert '"standings": 3' in events[1][1]


# =============================================================================
# CURSORS
# =============================================================================

class TestCursors:

    @pytest.mark.asyncio
    async def test_list_and_reset(self, api_client: AsyncClient, provider):
        provider.serve("teams", [{"id": 1}], [{"id": 2}])
        response = await api_client.post("/api/sync/jobs", json={"entity_type": "teams", "max_pages": 1})
        await api_client.get(f"/api/sync/jobs/{response.json()['job_id']}/events")

        cursors = (await api_client.get("/api/sync/cursors", params={"prefix": "team"})).json()
        assert cursors["count"] == 1
        assert cursors["cursors"][0]["key"] == "teams"
        assert cursors["cursors"][0]["cursor"] == "c1"

        assert (await api_client.delete("/api/sync/cursors/teams")).json() == {"key": "teams", "reset": True}
        assert (await api_client.delete("/api/sync/cursors/teams")).status_code == 404
        assert (await api_client.get("/api/sync/cursors")).json()["count"] == 0

    @pytest.mark.asyncio
    async def test_reset_by_prefix(self, api_client: AsyncClient, db_session):
        from statsync.services.sync.cursor_store import CursorStore

        store = CursorStore(db_session)
        for key in ("plays_cursor_game_1", "plays_cursor_game_2", "teams"):
            store.set_cursor(key, "c1")
        db_session.commit()

        response = await api_client.delete("/api/sync/cursors", params={"prefix": "plays_cursor"})

        assert response.json() == {"prefix": "plays_cursor", "reset": 2}
        remaining = (await api_client.get("/api/sync/cursors")).json()["cursors"]
        assert [c["key"] for c in remaining] == ["teams"]


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class TestWebhooks:

    @pytest.mark.asyncio
    async def test_webhook_crud(self, api_client: AsyncClient):
        response = await api_client.post(
            "/api/notifications/webhooks",
            json={"url": "https://hooks.test/a", "events": ["metric.update", "metric.update"], "secret": "s"},
        )

        assert response.status_code == 201
        webhook = response.json()
        assert webhook["events"] == ["metric.update"]
        assert webhook["has_secret"] is True
        assert "secret" not in webhook

        assert len((await api_client.get("/api/notifications/webhooks")).json()) == 1
        assert (await api_client.get(f"/api/notifications/webhooks/{webhook['id']}")).status_code == 200
        assert (await api_client.delete(f"/api/notifications/webhooks/{webhook['id']}")).status_code == 200
        assert (await api_client.get(f"/api/notifications/webhooks/{webhook['id']}")).status_code == 404
        assert (await api_client.delete(f"/api/notifications/webhooks/{webhook['id']}")).status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"url": "ftp://hooks.test/a"},
        {"url": "https://hooks.test/a", "events": ["game.update"]},
    ])
    async def test_invalid_webhook(self, api_client: AsyncClient, body):
        response = await api_client.post("/api/notifications/webhooks", json=body)

        assert response.status_code == 422


class TestAlerts:

    async def _webhook(self, api_client: AsyncClient) -> int:
        response = await api_client.post(
            "/api/notifications/webhooks", json={"url": "https://hooks.test/a", "events": ["metric.threshold"]}
        )
        return response.json()["id"]

    def _alert(self, webhook_id: int, **overrides):
        body = {
            "name": "QB heater",
            "entity_type": "player",
            "entity_id": 7,
            "season": 2024,
            "metric": "passer_rating",
            "operator": "gt",
            "value": 95,
            "webhook_id": webhook_id,
        }
        body.update(overrides)
        return body

    @pytest.mark.asyncio
    async def test_alert_crud_and_cascade(self, api_client: AsyncClient):
        webhook_id = await self._webhook(api_client)

        response = await api_client.post("/api/notifications/alerts", json=self._alert(webhook_id))
        assert response.status_code == 201
        alert = response.json()
        assert alert["scope"] == "season"
        assert alert["last_value"] is None

        listed = (await api_client.get("/api/notifications/alerts", params={"webhook_id": webhook_id})).json()
        assert [a["id"] for a in listed] == [alert["id"]]

        await api_client.delete(f"/api/notifications/webhooks/{webhook_id}")
        assert (await api_client.get("/api/notifications/alerts")).json() == []

    @pytest.mark.asyncio
    async def test_delete_alert(self, api_client: AsyncClient):
        webhook_id = await self._webhook(api_client)
        alert = (await api_client.post("/api/notifications/alerts", json=self._alert(webhook_id))).json()

        assert (await api_client.delete(f"/api/notifications/alerts/{alert['id']}")).status_code == 200
        assert (await api_client.delete(f"/api/notifications/alerts/{alert['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_alert_requires_existing_webhook(self, api_client: AsyncClient):
        response = await api_client.post("/api/notifications/alerts", json=self._alert(999))

        assert response.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"operator": "between"},
        {"entity_type": "league"},
        {"metric": ""},
    ])
    async def test_invalid_alert(self, api_client: AsyncClient, overrides):
        webhook_id = await self._webhook(api_client)

        response = await api_client.post("/api/notifications/alerts", json=self._alert(webhook_id, **overrides))

        assert response.status_code == 422
