"""
Durable key -> cursor mapping used to resume paginated jobs.

Each job key owns exactly one ``sync_state`` row. Database failures surface
as ``StoreUnavailableError`` so the calling job aborts instead of guessing a
cursor.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from statsync.core.exceptions import StoreUnavailableError
from statsync.core.logging import get_logger
from statsync.models import SyncState
from statsync.repositories.base import BaseRepository

logger = get_logger(__name__)


class CursorStore(BaseRepository[SyncState]):
    """Cursor records keyed by job key. Writes are not committed here."""

    def __init__(self, db: Session):
        super().__init__(SyncState, db)

    def get_record(self, key: str) -> Optional[SyncState]:
        try:
            return self.db.get(SyncState, key)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Could not read cursor '{key}': {e}") from e

    def get_cursor(self, key: str) -> Optional[str]:
        record = self.get_record(key)
        return record.cursor if record else None

    def set_cursor(self, key: str, cursor: Optional[str], meta: Optional[Dict[str, Any]] = None) -> SyncState:
        """Create or update the record for ``key``."""
        try:
            record = self.db.get(SyncState, key)
            if record is None:
                record = SyncState(key=key)
                self.db.add(record)
            record.cursor = None if cursor is None else str(cursor)
            if meta is not None:
                record.meta = meta
            record.updated_at = datetime.utcnow()
            self.db.flush()
            return record
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Could not write cursor '{key}': {e}") from e

    def get_timestamp(self, key: str) -> Optional[datetime]:
        """Read a cursor that stores an ISO timestamp (used by polling)."""
        value = self.get_cursor(key)
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            logger.warning(f"Cursor '{key}' does not hold a timestamp: {value!r}")
            return None

    def set_timestamp(self, key: str, ts: datetime, meta: Optional[Dict[str, Any]] = None) -> SyncState:
        return self.set_cursor(key, ts.isoformat(), meta)

    def list_records(self, prefix: Optional[str] = None) -> List[SyncState]:
        try:
            query = self.db.query(SyncState)
            if prefix:
                query = query.filter(SyncState.key.startswith(prefix))
            return query.order_by(SyncState.key).all()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Could not list cursors: {e}") from e

    def reset(self, key: str) -> bool:
        """Delete one cursor record (explicit admin action)."""
        try:
            deleted = self.db.query(SyncState).filter(SyncState.key == key).delete(synchronize_session=False)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Could not reset cursor '{key}': {e}") from e
        if deleted:
            logger.info(f"Cursor reset: {key}")
        return bool(deleted)

    def reset_prefix(self, prefix: str) -> int:
        try:
            deleted = (
                self.db.query(SyncState)
                .filter(SyncState.key.startswith(prefix))
                .delete(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Could not reset cursors '{prefix}*': {e}") from e
        logger.info(f"Cursor reset: {deleted} keys with prefix {prefix}")
        return deleted
