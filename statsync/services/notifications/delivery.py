"""
Webhook delivery as a value-returning step plus a separate persistence step.

``deliver`` performs one POST and reports the outcome as a DeliveryResult;
it never raises for HTTP or transport failures and never touches the
database. ``record_delivery`` writes that result to the subscription's
``last_status``.
"""
import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from statsync.core.logging import get_logger
from statsync.core.webhook_security import SIGNATURE_HEADER, sign_payload
from statsync.models import WebhookSubscription

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 7.0


@dataclass(frozen=True)
class SubscriptionTarget:
    """Detached snapshot of a subscription, safe to use after the session closes."""
    id: int
    url: str
    secret: Optional[str] = None

    @classmethod
    def from_model(cls, subscription: WebhookSubscription) -> "SubscriptionTarget":
        return cls(id=subscription.id, url=subscription.url, secret=subscription.secret or None)


@dataclass
class DeliveryResult:
    subscription_id: int
    event: str
    ok: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: int = 0
    delivered_at: datetime = field(default_factory=datetime.utcnow)

    def to_status(self) -> Dict[str, Any]:
        status = asdict(self)
        status["delivered_at"] = self.delivered_at.isoformat()
        status.pop("subscription_id")
        return status


def build_body(event: str, payload: Dict[str, Any]) -> bytes:
    return json.dumps({"event": event, "payload": payload}, default=str).encode()


async def deliver(
    target: SubscriptionTarget,
    event: str,
    payload: Dict[str, Any],
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> DeliveryResult:
    """
    POST ``{event, payload}`` to one subscriber. No retries.

    Args:
        target: Subscription snapshot
        event: Event name (metric.update, injury.update, metric.threshold)
        payload: JSON-serializable event payload
        client: Shared AsyncClient; a short-lived one is created if None
        timeout: Request timeout in seconds

    Returns:
        DeliveryResult describing success or failure
    """
    body = build_body(event, payload)
    headers = {"Content-Type": "application/json", "X-Statsync-Event": event}
    if target.secret:
        headers[SIGNATURE_HEADER] = sign_payload(body, target.secret)

    started = time.monotonic()
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=timeout) as own_client:
                response = await own_client.post(target.url, content=body, headers=headers)
        else:
            response = await client.post(target.url, content=body, headers=headers, timeout=timeout)
    except httpx.HTTPError as e:
        return DeliveryResult(
            subscription_id=target.id,
            event=event,
            ok=False,
            error=str(e) or type(e).__name__,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    ok = 200 <= response.status_code < 300
    return DeliveryResult(
        subscription_id=target.id,
        event=event,
        ok=ok,
        status_code=response.status_code,
        error=None if ok else f"HTTP {response.status_code}",
        duration_ms=int((time.monotonic() - started) * 1000),
    )


def record_delivery(db: Session, result: DeliveryResult) -> bool:
    """Persist a delivery outcome on its subscription. Flushes, does not commit."""
    subscription = db.get(WebhookSubscription, result.subscription_id)
    if subscription is None:
        logger.warning(f"Subscription {result.subscription_id} vanished before status could be recorded")
        return False
    subscription.last_status = result.to_status()
    db.flush()
    return True
