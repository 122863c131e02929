"""
Generic resumable paginated sync.

``SyncEngine.sync_entity`` pages through one provider resource, upserting
each page by natural key and persisting the next cursor in the same
transaction as the page's rows. A crash mid-job therefore resumes from the
last committed page, and replaying a page is harmless.

Loop termination:
- an empty page (even if the provider returned a cursor)
- no next cursor
- a cursor that did not advance
- ``max_pages`` reached (progress so far stays resumable)
"""
import asyncio
import inspect
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from statsync.core.exceptions import StoreUnavailableError
from statsync.core.logging import get_logger
from statsync.repositories.base import bulk_upsert
from statsync.services.core.provider_client import ProviderClient
from statsync.services.sync.cursor_store import CursorStore
from statsync.services.sync.entities import EntitySpec, build_cursor_key, get_spec, map_items

logger = get_logger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], Any]


@dataclass
class SyncResult:
    entity_type: str
    cursor_key: str
    fetched: int = 0
    upserted: int = 0
    skipped: int = 0
    pages: int = 0
    next_cursor: Optional[str] = None
    complete: bool = False
    stop_reason: Optional[str] = None
    duration_ms: int = 0
    filters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class KeyedLocks:
    """One asyncio.Lock per cursor key, dropped once nobody holds or waits."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] <= 0:
                self._refs.pop(key, None)
                self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


class SyncEngine:
    """
    Paginated sync over any registered entity type.

    Args:
        session_factory: Callable returning a new SQLAlchemy Session
        client: Provider client
        batch_size: Max rows per upsert statement
        page_delay: Seconds to sleep between pages (provider rate limits)
        max_pages: Default page cap per call
        locks: Shared per-key locks; overlapping calls on one key serialize
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        client: ProviderClient,
        batch_size: int = 500,
        page_delay: float = 0.2,
        max_pages: int = 1000,
        locks: Optional[KeyedLocks] = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.batch_size = batch_size
        self.page_delay = page_delay
        self.max_pages = max_pages
        self.locks = locks or KeyedLocks()

    def cursor_key(self, entity_type: str, filters: Optional[Mapping[str, Any]] = None) -> str:
        return build_cursor_key(get_spec(entity_type), filters or {})

    async def sync_entity(
        self,
        entity_type: str,
        filters: Optional[Mapping[str, Any]] = None,
        max_pages: Optional[int] = None,
        resume: bool = True,
        on_page: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        """
        Sync one entity type for one set of filters.

        Args:
            entity_type: Registered entity name (see ENTITY_SPECS)
            filters: Provider filters (season, week, game_id, team_ids, ...)
            max_pages: Page cap for this call (defaults to engine setting)
            resume: Start from the stored cursor instead of the beginning
            on_page: Optional sync/async callback receiving progress dicts

        Returns:
            SyncResult with fetched/upserted/skipped/pages/next_cursor

        Raises:
            StoreUnavailableError: The cursor could not be read or a page
                could not be committed; the cursor is left untouched
            ProviderError: The provider failed after retries
        """
        spec = get_spec(entity_type)
        filters = {k: v for k, v in (filters or {}).items() if v is not None}
        key = build_cursor_key(spec, filters)

        async with self.locks.hold(key):
            return await self._run(spec, key, filters, max_pages or self.max_pages, resume, on_page)

    async def _run(
        self,
        spec: EntitySpec,
        key: str,
        filters: Dict[str, Any],
        max_pages: int,
        resume: bool,
        on_page: Optional[ProgressCallback],
    ) -> SyncResult:
        start_time = time.monotonic()
        result = SyncResult(entity_type=spec.name, cursor_key=key, filters=dict(filters))
        cursor = self._load_cursor(key) if resume else None
        params = spec.request_params(filters)

        logger.info(f"Sync {spec.name} starting (key={key}, cursor={cursor}, resume={resume})")

        while result.pages < max_pages:
            page = await self.client.list_page(spec.resource, params, cursor)

            if not page.items:
                result.stop_reason = "empty_page"
                result.complete = True
                break

            rows, skipped = map_items(spec, page.items, filters)
            if skipped:
                logger.warning(f"Sync {spec.name}: skipped {skipped} malformed items on page {result.pages + 1}")

            next_cursor = page.next_cursor
            advanced = next_cursor is not None and next_cursor != cursor
            # The stored cursor only moves forward: at end of stream keep the
            # cursor that produced this page so later runs pick up new data
            stored_cursor = next_cursor if advanced else cursor

            result.upserted += self._write_page(spec, key, rows, filters, stored_cursor, meta={
                "entity_type": spec.name,
                "filters": _jsonable(filters),
                "pages": result.pages + 1,
                "last_page_items": len(page.items),
                "complete": next_cursor is None,
            })
            result.fetched += len(page.items)
            result.skipped += skipped
            result.pages += 1
            result.next_cursor = next_cursor

            await _emit(on_page, {
                "entity_type": spec.name,
                "cursor_key": key,
                "page": result.pages,
                "fetched": result.fetched,
                "upserted": result.upserted,
                "skipped": result.skipped,
                "next_cursor": next_cursor,
            })

            if next_cursor is None:
                result.stop_reason = "end_of_stream"
                result.complete = True
                break
            if not advanced:
                logger.warning(f"Sync {spec.name}: cursor did not advance ({cursor}), stopping")
                result.stop_reason = "cursor_not_advanced"
                break

            cursor = next_cursor
            if self.page_delay:
                await asyncio.sleep(self.page_delay)
        else:
            result.stop_reason = "max_pages"

        result.duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            f"Sync {spec.name} finished: pages={result.pages} fetched={result.fetched} "
            f"upserted={result.upserted} skipped={result.skipped} reason={result.stop_reason} "
            f"({result.duration_ms}ms)"
        )
        return result

    def _load_cursor(self, key: str) -> Optional[str]:
        try:
            with self.session_factory() as session:
                return CursorStore(session).get_cursor(key)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Could not open session to read cursor '{key}': {e}") from e

    def _write_page(
        self,
        spec: EntitySpec,
        key: str,
        rows: list,
        filters: Dict[str, Any],
        cursor: Optional[str],
        meta: Dict[str, Any],
    ) -> int:
        """Upsert a page, run its metric hooks and advance the cursor atomically."""
        now = datetime.utcnow()
        for row in rows:
            row["updated_at"] = now

        session: Session = self.session_factory()
        try:
            written = bulk_upsert(session, spec.model, rows, batch_size=self.batch_size)
            if spec.post_page and rows:
                spec.post_page(session, rows, filters)
            CursorStore(session).set_cursor(key, cursor, meta=meta)
            session.commit()
            return written
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreUnavailableError(f"Could not write page for '{key}': {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


async def _emit(callback: Optional[ProgressCallback], payload: Dict[str, Any]) -> None:
    if callback is None:
        return
    outcome = callback(payload)
    if inspect.isawaitable(outcome):
        await outcome


def _jsonable(filters: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: list(v) if isinstance(v, (tuple, set)) else v for k, v in filters.items()}
