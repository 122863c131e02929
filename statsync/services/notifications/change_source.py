"""
Change detection for canonical metrics and injuries.

Two interchangeable strategies share one ``on_change`` callback contract:

- FeedSource: PostgreSQL LISTEN/NOTIFY. Row triggers on the watched tables
  publish ``{table, id, op}`` and each notification is handled immediately.
- PollingSource: every ``interval`` seconds, query rows past a per-table
  ``(updated_at, id)`` watermark kept in the cursor store. The watermark
  advances only after every change in the batch was handled.

``select_change_source`` checks the database once at startup and picks the
feed when the backend supports it, polling otherwise.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from sqlalchemy import and_, or_, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from statsync.core.logging import get_logger
from statsync.models import CanonicalMetric, Injury
from statsync.services.metrics.metrics_service import document_to_dict
from statsync.services.sync.cursor_store import CursorStore

logger = get_logger(__name__)

WATCHED_TABLES = {
    "canonical_metrics": CanonicalMetric,
    "injuries": Injury,
}

POLL_KEY_PREFIX = "notify_poll_"
FEED_CHANNEL = "statsync_changes"


@dataclass
class ChangeEvent:
    table: str
    row_id: int
    document: Dict[str, Any]


OnChange = Callable[[ChangeEvent], Awaitable[None]]


def row_to_document(table: str, row: Any) -> Dict[str, Any]:
    if table == "canonical_metrics":
        doc = document_to_dict(row)
        doc["id"] = row.id
        return doc
    return {
        "id": row.id,
        "player_id": row.player_id,
        "status": row.status,
        "comment": row.comment,
        "report_date": row.report_date,
        "raw": row.raw,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


class ChangeSource(ABC):
    """Detection strategy feeding ChangeEvents to a single callback."""

    mode: str = "unknown"

    @abstractmethod
    async def start(self, on_change: OnChange) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...


class PollingSource(ChangeSource):
    mode = "polling"

    def __init__(
        self,
        session_factory: sessionmaker,
        interval: float = 15.0,
        tables: Sequence[str] = tuple(WATCHED_TABLES),
        batch_size: int = 500,
    ):
        self.session_factory = session_factory
        self.interval = interval
        self.tables = tuple(tables)
        self.batch_size = batch_size
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @staticmethod
    def cursor_key(table: str) -> str:
        return f"{POLL_KEY_PREFIX}{table}"

    async def start(self, on_change: OnChange) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(on_change))
        logger.info(f"Polling change source started (interval={self.interval}s, tables={list(self.tables)})")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _loop(self, on_change: OnChange) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poll_once(on_change)
            except Exception as e:
                logger.error(f"Change poll failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def poll_once(self, on_change: OnChange) -> int:
        """Process one polling round across all watched tables."""
        handled = 0
        for table in self.tables:
            handled += await self._poll_table(table, on_change)
        return handled

    async def _poll_table(self, table: str, on_change: OnChange) -> int:
        model = WATCHED_TABLES[table]
        key = self.cursor_key(table)

        with self.session_factory() as session:
            store = CursorStore(session)
            since = store.get_timestamp(key)
            if since is None:
                # First run starts watching from now rather than replaying history
                store.set_timestamp(key, datetime.utcnow(), meta={"table": table, "last_id": 0})
                session.commit()
                return 0
            last_id = _last_id(store.get_record(key))
            # Watermark is (updated_at, id): rows stamped with the boundary
            # timestamp but not yet handled are picked up by id.
            rows = (
                session.query(model)
                .filter(or_(
                    model.updated_at > since,
                    and_(model.updated_at == since, model.id > last_id),
                ))
                .order_by(model.updated_at, model.id)
                .limit(self.batch_size)
                .all()
            )
            events = [ChangeEvent(table, row.id, row_to_document(table, row)) for row in rows]
            newest = (rows[-1].updated_at, rows[-1].id) if rows else None

        if not events:
            return 0

        for event in events:
            await on_change(event)

        with self.session_factory() as session:
            CursorStore(session).set_timestamp(
                key, newest[0], meta={"table": table, "last_id": newest[1], "last_batch": len(events)}
            )
            session.commit()
        return len(events)


def _last_id(record: Any) -> int:
    meta = record.meta if record is not None and isinstance(record.meta, dict) else {}
    try:
        return int(meta.get("last_id") or 0)
    except (TypeError, ValueError):
        return 0


_TRIGGER_FUNCTION_SQL = f"""
CREATE OR REPLACE FUNCTION statsync_notify_change() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify(
        '{FEED_CHANNEL}',
        CAST(json_build_object('table', TG_TABLE_NAME, 'id', NEW.id, 'op', TG_OP) AS text)
    );
    RETURN NEW;
END;
$$ LANGUAGE plpgsql
"""


class FeedSource(ChangeSource):
    """LISTEN/NOTIFY change feed (PostgreSQL with psycopg2)."""

    mode = "feed"

    def __init__(
        self,
        engine: Engine,
        session_factory: sessionmaker,
        tables: Sequence[str] = tuple(WATCHED_TABLES),
        channel: str = FEED_CHANNEL,
    ):
        self.engine = engine
        self.session_factory = session_factory
        self.tables = tuple(tables)
        self.channel = channel
        self._raw = None
        self._conn = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None

    def install(self) -> None:
        """Create (or replace) the notify trigger on every watched table."""
        with self.engine.begin() as conn:
            conn.execute(text(_TRIGGER_FUNCTION_SQL))
            for table in self.tables:
                conn.execute(text(f"DROP TRIGGER IF EXISTS {table}_notify_change ON {table}"))
                conn.execute(text(
                    f"CREATE TRIGGER {table}_notify_change AFTER INSERT OR UPDATE ON {table} "
                    f"FOR EACH ROW EXECUTE FUNCTION statsync_notify_change()"
                ))

    async def start(self, on_change: OnChange) -> None:
        self._raw = self.engine.raw_connection()
        self._conn = self._raw.driver_connection
        self._conn.autocommit = True
        with self._conn.cursor() as cur:
            cur.execute(f"LISTEN {self.channel}")

        loop = asyncio.get_running_loop()
        loop.add_reader(self._conn.fileno(), self._on_readable)
        self._consumer = asyncio.create_task(self._consume(on_change))
        logger.info(f"Change feed listening on channel '{self.channel}'")

    def _on_readable(self) -> None:
        self._conn.poll()
        while self._conn.notifies:
            note = self._conn.notifies.pop(0)
            self._queue.put_nowait(note.payload)

    async def _consume(self, on_change: OnChange) -> None:
        while True:
            payload = await self._queue.get()
            try:
                event = self._load_event(payload)
                if event is not None:
                    await on_change(event)
            except Exception as e:
                logger.error(f"Change feed event failed ({payload}): {e}", exc_info=True)

    def _load_event(self, payload: str) -> Optional[ChangeEvent]:
        message = json.loads(payload)
        table = message.get("table")
        model = WATCHED_TABLES.get(table)
        if model is None:
            return None
        with self.session_factory() as session:
            row = session.get(model, message.get("id"))
            if row is None:
                return None
            return ChangeEvent(table, row.id, row_to_document(table, row))

    async def stop(self) -> None:
        if self._conn is not None:
            asyncio.get_running_loop().remove_reader(self._conn.fileno())
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        if self._raw is not None:
            self._raw.close()
            self._raw = None
            self._conn = None


def supports_change_feed(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql" and engine.dialect.driver == "psycopg2"


def select_change_source(
    engine: Engine,
    session_factory: sessionmaker,
    poll_interval: float = 15.0,
) -> ChangeSource:
    """Check the backend once: LISTEN/NOTIFY feed if possible, else polling."""
    if supports_change_feed(engine):
        feed = FeedSource(engine, session_factory)
        try:
            feed.install()
            logger.info("Change notifier mode: feed (LISTEN/NOTIFY)")
            return feed
        except SQLAlchemyError as e:
            logger.warning(f"Change feed unavailable, falling back to polling: {e}")
    logger.info(f"Change notifier mode: polling every {poll_interval}s")
    return PollingSource(session_factory, interval=poll_interval)
