"""
Base repository class and bulk upsert helper for the data access layer.

The repository pattern provides:
1. Separation of data access logic from business logic
2. Single place for query logic (easier to maintain)
3. Easier testing (can mock repositories)

``bulk_upsert`` is the only write path for raw provider rows: it issues a
dialect-native ``INSERT .. ON CONFLICT DO UPDATE`` so re-ingesting a page
never creates duplicates.
"""
from abc import ABC
from typing import TypeVar, Generic, Type, Optional, List, Any, Dict, Iterable, Sequence

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Query, Session

T = TypeVar("T")

_INSERT_BY_DIALECT = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class BaseRepository(Generic[T], ABC):
    """
    Base repository class providing common data access methods.

    Attributes:
        model_type: The SQLAlchemy model class this repository manages
        db: The database session
    """

    def __init__(self, model_type: Type[T], db: Session):
        self.model_type = model_type
        self.db = db

    def find_by_id(self, id: Any) -> Optional[T]:
        """Find a single record by ID."""
        return self.db.get(self.model_type, id)

    def find_all(self, limit: Optional[int] = None, offset: Optional[int] = None) -> List[T]:
        query = self.db.query(self.model_type).order_by(self.model_type.id)
        if offset is not None:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def create(self, **kwargs) -> T:
        """
        Create a new record.

        Returns:
            The created record (flushed, not yet committed)
        """
        instance = self.model_type(**kwargs)
        self.db.add(instance)
        self.db.flush()
        return instance

    def delete(self, id: Any) -> bool:
        """
        Delete a record by ID.

        Returns:
            True if deleted, False if not found
        """
        instance = self.find_by_id(id)
        if instance:
            self.db.delete(instance)
            return True
        return False

    def query(self) -> Query:
        """Get a new query object for this model."""
        return self.db.query(self.model_type)

    def filter_by(self, **kwargs) -> List[T]:
        return self.db.query(self.model_type).filter_by(**kwargs).all()

    def where(self, *criterion) -> List[T]:
        """Filter records using SQLAlchemy expressions."""
        return self.db.query(self.model_type).filter(*criterion).all()

    def count(self, *criterion) -> int:
        """Count records matching optional criterion."""
        query = self.db.query(func.count(self.model_type.id))
        if criterion:
            query = query.filter(*criterion)
        return query.scalar() or 0


def chunked(items: Sequence[Dict[str, Any]], size: int) -> Iterable[Sequence[Dict[str, Any]]]:
    """Yield consecutive slices of at most ``size`` items."""
    size = max(int(size), 1)
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _dedupe_by_key(rows: Iterable[Dict[str, Any]], conflict_cols: Sequence[str]) -> List[Dict[str, Any]]:
    # One statement may not touch the same conflict target twice; last write wins
    by_key: Dict[tuple, Dict[str, Any]] = {}
    for row in rows:
        by_key[tuple(row[c] for c in conflict_cols)] = row
    return list(by_key.values())


def bulk_upsert(
    session: Session,
    model: Type[Any],
    rows: Sequence[Dict[str, Any]],
    conflict_cols: Sequence[str] = ("natural_key",),
    batch_size: int = 500,
) -> int:
    """
    Insert or update ``rows`` keyed by ``conflict_cols``, in bounded batches.

    Does not commit; the caller owns the transaction so a page and its cursor
    land together.

    Returns:
        Number of distinct rows written
    """
    if not rows:
        return 0

    dialect = session.get_bind().dialect.name
    insert_fn = _INSERT_BY_DIALECT.get(dialect)
    if insert_fn is None:
        raise NotImplementedError(f"bulk_upsert does not support dialect '{dialect}'")

    unique_rows = _dedupe_by_key(rows, conflict_cols)
    table = model.__table__
    written = 0

    for batch in chunked(unique_rows, batch_size):
        stmt = insert_fn(table).values(list(batch))
        update_cols = {
            name: stmt.excluded[name]
            for name in batch[0].keys()
            if name not in conflict_cols and name != "id"
        }
        if update_cols:
            stmt = stmt.on_conflict_do_update(index_elements=list(conflict_cols), set_=update_cols)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_cols))
        session.execute(stmt)
        written += len(batch)

    return written
