"""
Notification API routes.

Provides endpoints for:
- Webhook subscriptions (create, list, get, delete)
- Threshold alerts bound to a subscription (create, list, delete)

Base path: /api/notifications
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from statsync.core.database import get_db
from statsync.models import Alert, WebhookSubscription
from statsync.repositories.notification_repository import AlertRepository, WebhookRepository
from statsync.services.notifications.alerts import OPERATORS
from statsync.services.notifications.notifier import INJURY_UPDATE, METRIC_THRESHOLD, METRIC_UPDATE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])

EVENTS = (METRIC_UPDATE, INJURY_UPDATE, METRIC_THRESHOLD)


# ==================== REQUEST / RESPONSE MODELS ====================

class WebhookCreate(BaseModel):
    url: str = Field(..., min_length=1, description="Endpoint receiving POSTed events")
    events: List[str] = Field(default_factory=lambda: [METRIC_UPDATE], description="Subscribed event names")
    secret: Optional[str] = Field(None, description="HMAC secret; deliveries are signed when set")
    active: bool = True

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value

    @field_validator("events")
    @classmethod
    def check_events(cls, value: List[str]) -> List[str]:
        unknown = [e for e in value if e not in EVENTS]
        if unknown:
            raise ValueError(f"Unknown events {unknown}; expected any of {list(EVENTS)}")
        return value


class WebhookResponse(BaseModel):
    id: int
    url: str
    events: List[str]
    active: bool
    has_secret: bool
    last_status: Optional[Dict] = None
    created_at: datetime


class AlertCreate(BaseModel):
    name: Optional[str] = None
    entity_type: str = Field(..., pattern="^(player|team)$")
    entity_id: int
    season: Optional[int] = Field(None, description="Limit to one season (any season if omitted)")
    scope: str = "season"
    metric: str = Field(..., min_length=1, description="Merged metric name, e.g. passer_rating")
    operator: str = Field(..., description="gt, gte, lt, lte or eq")
    value: float
    webhook_id: int
    active: bool = True

    @field_validator("operator")
    @classmethod
    def check_operator(cls, value: str) -> str:
        if value not in OPERATORS:
            raise ValueError(f"operator must be one of {sorted(OPERATORS)}")
        return value


class AlertResponse(BaseModel):
    id: int
    name: Optional[str]
    entity_type: str
    entity_id: int
    season: Optional[int]
    scope: str
    metric: str
    operator: str
    value: float
    webhook_id: int
    active: bool
    last_value: Optional[float]
    last_fired_at: Optional[datetime]
    created_at: datetime


def _webhook_response(sub: WebhookSubscription) -> WebhookResponse:
    return WebhookResponse(
        id=sub.id,
        url=sub.url,
        events=list(sub.events or []),
        active=sub.active,
        has_secret=bool(sub.secret),
        last_status=sub.last_status,
        created_at=sub.created_at,
    )


def _alert_response(alert: Alert) -> AlertResponse:
    return AlertResponse(
        id=alert.id,
        name=alert.name,
        entity_type=alert.entity_type,
        entity_id=alert.entity_id,
        season=alert.season,
        scope=alert.scope,
        metric=alert.metric,
        operator=alert.operator,
        value=alert.value,
        webhook_id=alert.webhook_id,
        active=alert.active,
        last_value=alert.last_value,
        last_fired_at=alert.last_fired_at,
        created_at=alert.created_at,
    )


# ==================== WEBHOOKS ====================

@router.post("/webhooks", response_model=WebhookResponse, status_code=201)
async def create_webhook(body: WebhookCreate, db: Session = Depends(get_db)):
    sub = WebhookRepository(db).create(
        url=body.url,
        events=list(dict.fromkeys(body.events)),
        secret=body.secret or None,
        active=body.active,
        created_at=datetime.utcnow(),
    )
    db.commit()
    logger.info(f"Webhook {sub.id} created for {sub.events}")
    return _webhook_response(sub)


@router.get("/webhooks", response_model=List[WebhookResponse])
async def list_webhooks(db: Session = Depends(get_db)):
    return [_webhook_response(sub) for sub in WebhookRepository(db).find_all()]


@router.get("/webhooks/{webhook_id}", response_model=WebhookResponse)
async def get_webhook(webhook_id: int, db: Session = Depends(get_db)):
    sub = WebhookRepository(db).find_by_id(webhook_id)
    if sub is None:
        raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")
    return _webhook_response(sub)


@router.delete("/webhooks/{webhook_id}")
async def delete_webhook(webhook_id: int, db: Session = Depends(get_db)) -> Dict:
    """Delete a subscription and the alerts bound to it."""
    if not WebhookRepository(db).delete(webhook_id):
        raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")
    db.commit()
    logger.info(f"Webhook {webhook_id} deleted")
    return {"id": webhook_id, "deleted": True}


# ==================== ALERTS ====================

@router.post("/alerts", response_model=AlertResponse, status_code=201)
async def create_alert(body: AlertCreate, db: Session = Depends(get_db)):
    if WebhookRepository(db).find_by_id(body.webhook_id) is None:
        raise HTTPException(status_code=404, detail=f"Webhook {body.webhook_id} not found")
    alert = AlertRepository(db).create(**body.model_dump(), created_at=datetime.utcnow())
    db.commit()
    logger.info(f"Alert {alert.id} created: {alert.metric} {alert.operator} {alert.value}")
    return _alert_response(alert)


@router.get("/alerts", response_model=List[AlertResponse])
async def list_alerts(
    webhook_id: Optional[int] = Query(None, description="Only alerts bound to this webhook"),
    db: Session = Depends(get_db),
):
    repo = AlertRepository(db)
    alerts = repo.find_for_webhook(webhook_id) if webhook_id is not None else repo.find_all()
    return [_alert_response(alert) for alert in alerts]


@router.delete("/alerts/{alert_id}")
async def delete_alert(alert_id: int, db: Session = Depends(get_db)) -> Dict:
    if not AlertRepository(db).delete(alert_id):
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
    db.commit()
    return {"id": alert_id, "deleted": True}
