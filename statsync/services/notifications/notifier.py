"""
Change notifier: alert evaluation and webhook fan-out.

For every detected change:
- metric documents: evaluate matching active alerts and deliver
  ``metric.threshold`` to each fired alert's subscription
- metric documents and injuries: deliver ``metric.update`` /
  ``injury.update`` to every active subscription listening for it

Each delivery runs as its own background task and records its result on its
own subscription, so a slow or failing subscriber never blocks detection or
another subscriber.
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from statsync.core.logging import get_logger
from statsync.repositories.notification_repository import AlertRepository, WebhookRepository
from statsync.services.notifications.alerts import observe, threshold_payload
from statsync.services.notifications.change_source import ChangeEvent, ChangeSource, PollingSource
from statsync.services.notifications.delivery import (
    DEFAULT_TIMEOUT, DeliveryResult, SubscriptionTarget, deliver, record_delivery,
)

logger = get_logger(__name__)

METRIC_UPDATE = "metric.update"
INJURY_UPDATE = "injury.update"
METRIC_THRESHOLD = "metric.threshold"

EVENT_BY_TABLE = {
    "canonical_metrics": METRIC_UPDATE,
    "injuries": INJURY_UPDATE,
}

Delivery = Tuple[SubscriptionTarget, str, Dict[str, Any]]


class Notifier:
    """
    Args:
        session_factory: Callable returning a new SQLAlchemy Session
        source: Change detection strategy
        http_client: Shared AsyncClient for deliveries (created if None)
        timeout: Per-delivery timeout in seconds
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        source: ChangeSource,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.session_factory = session_factory
        self.source = source
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self._tasks: Set[asyncio.Task] = set()
        self.running = False

    @property
    def mode(self) -> str:
        return self.source.mode

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def start(self) -> None:
        if self.running:
            return
        try:
            await self.source.start(self.handle_change)
        except Exception as e:
            if isinstance(self.source, PollingSource):
                raise
            logger.warning(f"Change source '{self.source.mode}' failed to start, falling back to polling: {e}")
            self.source = PollingSource(self.session_factory)
            await self.source.start(self.handle_change)
        self.running = True
        logger.info(f"Notifier started in {self.mode} mode")

    async def stop(self) -> None:
        if not self.running:
            return
        await self.source.stop()
        await self.drain()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self.running = False
        logger.info("Notifier stopped")

    async def handle_change(self, event: ChangeEvent) -> int:
        """
        Evaluate one change and schedule its deliveries.

        Returns:
            Number of deliveries scheduled
        """
        with self.session_factory() as session:
            deliveries: List[Delivery] = []
            if event.table == "canonical_metrics":
                deliveries.extend(self._fired_alerts(session, event.document))
            generic = EVENT_BY_TABLE.get(event.table)
            if generic:
                deliveries.extend(self._subscribers(session, generic, event.document))
            session.commit()

        for target, name, payload in deliveries:
            self._spawn(target, name, payload)
        return len(deliveries)

    def _fired_alerts(self, session: Session, document: Dict[str, Any]) -> List[Delivery]:
        alerts = AlertRepository(session).find_active_for_entity(
            document.get("entity_type"),
            document.get("entity_id"),
            scope=document.get("scope"),
            season=document.get("season"),
        )
        now = datetime.utcnow()
        fired = []
        for alert in alerts:
            if not observe(alert, document.get("metrics") or {}, now):
                continue
            logger.info(
                f"Alert {alert.id} fired: {alert.metric} {alert.operator} {alert.value} "
                f"for {alert.entity_type} {alert.entity_id}"
            )
            if alert.webhook is not None and alert.webhook.active:
                fired.append((
                    SubscriptionTarget.from_model(alert.webhook),
                    METRIC_THRESHOLD,
                    threshold_payload(alert, document),
                ))
        return fired

    def _subscribers(self, session: Session, event_name: str, document: Dict[str, Any]) -> List[Delivery]:
        return [
            (SubscriptionTarget.from_model(sub), event_name, document)
            for sub in WebhookRepository(session).find_active_for_event(event_name)
        ]

    def _spawn(self, target: SubscriptionTarget, event: str, payload: Dict[str, Any]) -> None:
        task = asyncio.create_task(self._deliver_and_record(target, event, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver_and_record(self, target: SubscriptionTarget, event: str, payload: Dict[str, Any]) -> DeliveryResult:
        result = await deliver(target, event, payload, client=self._client(), timeout=self.timeout)
        if not result.ok:
            logger.warning(f"Webhook {target.id} delivery of {event} failed: {result.error}")
        try:
            with self.session_factory() as session:
                record_delivery(session, result)
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not record delivery status for webhook {target.id}: {e}")
        return result

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
