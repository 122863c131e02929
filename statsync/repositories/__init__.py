"""
Repository layer for data access.

Usage:
    from statsync.repositories import WebhookRepository, bulk_upsert
    from statsync.core.database import SessionLocal

    db = SessionLocal()
    hooks = WebhookRepository(db).find_active_for_event("metric.update")
    db.close()
"""

from statsync.repositories.base import BaseRepository, bulk_upsert
from statsync.repositories.notification_repository import AlertRepository, WebhookRepository

__all__ = [
    "BaseRepository",
    "bulk_upsert",
    "AlertRepository",
    "WebhookRepository",
]
