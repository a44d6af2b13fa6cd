"""
Notification outbox.

Events are added to the caller's session so they commit (or roll back)
together with the state change they describe. ``dispatch_pending_events``
runs after the request has committed and pushes undelivered rows to the
notification channel; a failed push leaves the row for the next dispatch.
"""

import json
import logging
from datetime import date, datetime

import requests

from escrow import settings
from escrow.database import SessionLocal
from escrow.models import OrderEvent, utcnow

logger = logging.getLogger(__name__)

STATUS_CHANGED = "order.status_changed"
ORDER_CREATED = "order.created"
PAYMENT_REMINDER = "order.payment_reminder"
PAYMENT_REFUNDED = "payment.refunded"
DELIVERY_READY = "delivery.ready_for_remittance"
REMITTANCE_SETTLED = "remittance.settled"
REMITTANCE_ACKNOWLEDGED = "remittance.acknowledged"


def _safe_value(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_safe_value(v) for v in value]
    return value


def order_event(order, event_type: str, **payload) -> OrderEvent:
    return OrderEvent(
        event_type=event_type,
        order_id=order.id,
        customer_id=order.customer_id,
        organization_id=order.organization_id,
        payload_json=json.dumps(_safe_value(payload), separators=(",", ":"), sort_keys=True),
        created_at=utcnow(),
        attempts=0,
    )


def record_event(db, order, event_type: str, **payload) -> OrderEvent:
    event = order_event(order, event_type, **payload)
    db.add(event)
    return event


def publish(event: OrderEvent) -> bool:
    url = settings.NOTIFICATION_WEBHOOK_URL
    if not url:
        logger.info("event %s for order %s (no notification channel configured)",
                    event.event_type, event.order_id)
        return True
    try:
        response = requests.post(url, json=event.to_dict(), timeout=settings.NOTIFICATION_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("notification %s for order %s failed: %s", event.id, event.order_id, exc)
        return False
    return True


def dispatch_pending_events(db, limit: int = 100) -> int:
    pending = (
        db.query(OrderEvent)
        .filter(OrderEvent.delivered_at.is_(None))
        .order_by(OrderEvent.id)
        .limit(limit)
        .all()
    )
    delivered = 0
    for event in pending:
        event.attempts += 1
        if publish(event):
            event.delivered_at = utcnow()
            delivered += 1
    db.commit()
    return delivered


def dispatch_in_background():
    """Entry point for FastAPI background tasks; owns its session."""
    db = SessionLocal()
    try:
        dispatch_pending_events(db)
    except Exception:
        db.rollback()
        logger.exception("notification dispatch failed")
    finally:
        db.close()
