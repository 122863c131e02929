"""Integration tests for change detection and the notifier.

Test Strategy:
1. Polling initializes on first run and then reports newer rows
2. The polling timestamp only advances after the batch was handled
3. Notifier fans a change out to every listening subscription
4. One failing subscriber never affects another's delivery or status
5. Threshold alerts deliver metric.threshold once per crossing
"""
import json
from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from statsync.models import Alert, CanonicalMetric, Injury, WebhookSubscription
from statsync.services.notifications.change_source import (
    ChangeEvent, PollingSource, select_change_source, supports_change_feed,
)
from statsync.services.notifications.notifier import Notifier
from statsync.services.sync.cursor_store import CursorStore


def _metric_doc(session, entity_id=7, passer_rating=97.0, offset_seconds=1):
    doc = CanonicalMetric(
        entity_type="player", entity_id=entity_id, season=2024, scope="season",
        sources={"provider": {"passer_rating": passer_rating}}, metrics={"passer_rating": passer_rating},
        game_count=1, updated_at=datetime.utcnow() + timedelta(seconds=offset_seconds),
    )
    session.add(doc)
    session.commit()
    return doc


def _document(entity_id=7, passer_rating=97.0):
    return {"entity_type": "player", "entity_id": entity_id, "season": 2024, "scope": "season",
            "metrics": {"passer_rating": passer_rating}}


class Recorder:
    """Collects webhook POSTs; URLs containing 'broken' answer 500."""

    def __init__(self):
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((str(request.url), json.loads(request.content)))
        if "broken" in str(request.url):
            return httpx.Response(500)
        return httpx.Response(200)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class TestPollingSource:

    @pytest.mark.asyncio
    async def test_first_poll_initializes_timestamp(self, session_factory: sessionmaker):
        with session_factory() as session:
            _metric_doc(session, offset_seconds=-60)
        source = PollingSource(session_factory, interval=60)
        seen = []

        async def on_change(event):
            seen.append(event)

        assert await source.poll_once(on_change) == 0
        assert seen == []
        with session_factory() as session:
            assert CursorStore(session).get_timestamp("notify_poll_canonical_metrics") is not None
            assert CursorStore(session).get_timestamp("notify_poll_injuries") is not None

    @pytest.mark.asyncio
    async def test_reports_newer_rows(self, session_factory: sessionmaker):
        source = PollingSource(session_factory)
        seen = []

        async def on_change(event):
            seen.append(event)

        await source.poll_once(on_change)
        with session_factory() as session:
            _metric_doc(session)
            session.add(Injury(natural_key="7:2024-11-01", player_id=7, status="Questionable",
                               report_date="2024-11-01", raw={}, updated_at=datetime.utcnow() + timedelta(seconds=1)))
            session.commit()

        assert await source.poll_once(on_change) == 2
        assert [e.table for e in seen] == ["canonical_metrics", "injuries"]
        assert seen[0].document["metrics"] == {"passer_rating": 97.0}
        assert seen[1].document["status"] == "Questionable"

        assert await source.poll_once(on_change) == 0

    @pytest.mark.asyncio
    async def test_timestamp_not_advanced_on_failure(self, session_factory: sessionmaker):
        """A failed batch is seen again on the next poll."""
        source = PollingSource(session_factory, tables=["canonical_metrics"])

        async def noop(event):
            pass

        await source.poll_once(noop)
        with session_factory() as session:
            before = CursorStore(session).get_timestamp("notify_poll_canonical_metrics")
            _metric_doc(session)

        async def failing(event):
            raise RuntimeError("handler crashed")

        with pytest.raises(RuntimeError):
            await source.poll_once(failing)
        with session_factory() as session:
            assert CursorStore(session).get_timestamp("notify_poll_canonical_metrics") == before

        assert await source.poll_once(noop) == 1
        with session_factory() as session:
            assert CursorStore(session).get_timestamp("notify_poll_canonical_metrics") > before

    @pytest.mark.asyncio
    async def test_rows_sharing_timestamp_across_batches(self, session_factory: sessionmaker):
        """A page stamped with one updated_at larger than the batch is reported in full."""
        source = PollingSource(session_factory, tables=["injuries"], batch_size=2)
        seen = []

        async def on_change(event):
            seen.append(event.row_id)

        await source.poll_once(on_change)
        stamp = datetime.utcnow() + timedelta(hours=1)
        with session_factory() as session:
            session.add_all([
                Injury(natural_key=f"{pid}:2024-11-01", player_id=pid, status="Out",
                       report_date="2024-11-01", raw={}, updated_at=stamp)
                for pid in (7, 8, 9)
            ])
            session.commit()

        assert await source.poll_once(on_change) == 2
        assert await source.poll_once(on_change) == 1
        assert await source.poll_once(on_change) == 0
        assert len(seen) == len(set(seen)) == 3

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory: sessionmaker):
        source = PollingSource(session_factory, interval=0.01)

        async def noop(event):
            pass

        await source.start(noop)
        await source.stop()

        assert source._task is None

    def test_sqlite_selects_polling(self, sqlite_engine, session_factory):
        assert supports_change_feed(sqlite_engine) is False
        source = select_change_source(sqlite_engine, session_factory, poll_interval=5)

        assert source.mode == "polling"
        assert source.interval == 5


class TestNotifier:

    @pytest.mark.asyncio
    async def test_fan_out_with_isolated_failures(self, session_factory: sessionmaker):
        """A failing subscriber does not block or mark the healthy one."""
        with session_factory() as session:
            session.add_all([
                WebhookSubscription(url="https://hooks.test/good", events=["metric.update"]),
                WebhookSubscription(url="https://hooks.test/broken", events=["metric.update"]),
                WebhookSubscription(url="https://hooks.test/injuries", events=["injury.update"]),
                WebhookSubscription(url="https://hooks.test/off", events=["metric.update"], active=False),
            ])
            session.commit()
        recorder = Recorder()
        notifier = Notifier(session_factory, PollingSource(session_factory), http_client=recorder.client())

        scheduled = await notifier.handle_change(ChangeEvent("canonical_metrics", 1, _document()))
        await notifier.drain()

        assert scheduled == 2
        assert sorted(url for url, _ in recorder.calls) == ["https://hooks.test/broken", "https://hooks.test/good"]
        assert all(body["event"] == "metric.update" for _, body in recorder.calls)
        with session_factory() as session:
            status = {s.url.rsplit("/", 1)[-1]: s.last_status for s in session.query(WebhookSubscription).all()}
        assert status["good"]["ok"] is True
        assert status["good"]["status_code"] == 200
        assert status["broken"]["ok"] is False
        assert status["broken"]["status_code"] == 500
        assert status["injuries"] is None
        assert status["off"] is None

    @pytest.mark.asyncio
    async def test_injury_event(self, session_factory: sessionmaker):
        with session_factory() as session:
            session.add(WebhookSubscription(url="https://hooks.test/injuries", events=["injury.update"]))
            session.commit()
        recorder = Recorder()
        notifier = Notifier(session_factory, PollingSource(session_factory), http_client=recorder.client())

        await notifier.handle_change(ChangeEvent("injuries", 3, {"id": 3, "player_id": 7, "status": "Out"}))
        await notifier.drain()

        assert recorder.calls == [
            ("https://hooks.test/injuries", {"event": "injury.update", "payload": {"id": 3, "player_id": 7, "status": "Out"}}),
        ]

    @pytest.mark.asyncio
    async def test_threshold_alert_fires_once(self, session_factory: sessionmaker):
        with session_factory() as session:
            hook = WebhookSubscription(url="https://hooks.test/alerts", events=["metric.threshold"])
            session.add(hook)
            session.flush()
            session.add_all([
                Alert(name="QB heater", entity_type="player", entity_id=7, season=2024, scope="season",
                      metric="passer_rating", operator="gt", value=95.0, webhook_id=hook.id),
                Alert(name="Other player", entity_type="player", entity_id=8, scope="season",
                      metric="passer_rating", operator="gt", value=95.0, webhook_id=hook.id),
            ])
            session.commit()
        recorder = Recorder()
        notifier = Notifier(session_factory, PollingSource(session_factory), http_client=recorder.client())

        first = await notifier.handle_change(ChangeEvent("canonical_metrics", 1, _document(passer_rating=97.0)))
        second = await notifier.handle_change(ChangeEvent("canonical_metrics", 1, _document(passer_rating=98.5)))
        await notifier.drain()

        assert (first, second) == (1, 0)
        assert len(recorder.calls) == 1
        _, body = recorder.calls[0]
        assert body["event"] == "metric.threshold"
        assert body["payload"]["alert"]["name"] == "QB heater"
        assert body["payload"]["metric_value"] == 97.0
        with session_factory() as session:
            alert = session.query(Alert).filter_by(entity_id=7).one()
            assert alert.last_value == 98.5
            assert alert.last_fired_at is not None

    @pytest.mark.asyncio
    async def test_start_stop_with_polling(self, session_factory: sessionmaker):
        notifier = Notifier(session_factory, PollingSource(session_factory, interval=0.01))

        await notifier.start()
        assert notifier.running is True
        assert notifier.mode == "polling"
        await notifier.stop()

        assert notifier.running is False
