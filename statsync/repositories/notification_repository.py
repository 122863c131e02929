"""
Repositories for webhook subscriptions and threshold alerts.

Usage:
    repo = WebhookRepository(db)
    sub = repo.create(url="https://example.com/hook", events=["metric.update"])
    listeners = repo.find_active_for_event("metric.update")
"""
from typing import List, Optional

from statsync.models import Alert, WebhookSubscription
from statsync.repositories.base import BaseRepository


class WebhookRepository(BaseRepository[WebhookSubscription]):
    """Repository for webhook subscriptions."""

    def __init__(self, db):
        super().__init__(WebhookSubscription, db)

    def find_active(self) -> List[WebhookSubscription]:
        return self.where(WebhookSubscription.active.is_(True))

    def find_active_for_event(self, event: str) -> List[WebhookSubscription]:
        # events is a JSON list, filtered here to stay portable across backends
        return [sub for sub in self.find_active() if event in (sub.events or [])]


class AlertRepository(BaseRepository[Alert]):
    """Repository for threshold alerts."""

    def __init__(self, db):
        super().__init__(Alert, db)

    def find_for_webhook(self, webhook_id: int) -> List[Alert]:
        return self.filter_by(webhook_id=webhook_id)

    def find_active_for_entity(
        self,
        entity_type: str,
        entity_id: int,
        scope: str = "season",
        season: Optional[int] = None,
    ) -> List[Alert]:
        alerts = self.where(
            Alert.active.is_(True),
            Alert.entity_type == entity_type,
            Alert.entity_id == entity_id,
            Alert.scope == scope,
        )
        return [a for a in alerts if a.season is None or a.season == season]
