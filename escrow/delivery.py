"""
Delivery confirmation: fulfilment evidence for a fully paid order.

Exactly one confirmation exists per order. Replaying the same request
returns the stored confirmation; a different second confirmation is refused.
"""

import logging

from sqlalchemy.exc import IntegrityError

from escrow import events, orders
from escrow.errors import AlreadyConfirmed, NotFullyPaid, ValidationError
from escrow.idempotency import request_hash
from escrow.models import DeliveryConfirmation, DeliveryMode, Order, OrderStatus, utcnow

logger = logging.getLogger(__name__)

EVIDENCE_FIELDS = ("product_image", "representative_image", "user_image", "image_comment", "video_url")

DECLARATION_TEMPLATE = (
    "I, {customer}, confirm that I have received {product} from {organization} "
    "and that it meets my expectations. I am satisfied with the delivery and "
    "authorise the release of the payment for order {order_id}."
)


def _clean(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _clean_evidence(evidence) -> dict:
    evidence = dict(evidence or {})
    unknown = sorted(set(evidence) - set(EVIDENCE_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown evidence fields: {', '.join(unknown)}", field="evidence")
    return {name: _clean(evidence.get(name)) for name in EVIDENCE_FIELDS}


def _validate(delivery_mode, delivery_address, pickup_center_name, satisfaction_declaration):
    if delivery_mode not in DeliveryMode.ALL:
        raise ValidationError(f"Unknown delivery mode: {delivery_mode!r}", field="delivery_mode")
    if not satisfaction_declaration:
        raise ValidationError("Satisfaction declaration is required", field="satisfaction_declaration")
    if delivery_mode == DeliveryMode.SHIPPING and not delivery_address:
        raise ValidationError("Delivery address is required for shipping mode", field="delivery_address")
    if delivery_mode == DeliveryMode.PICKUP_CENTER and not pickup_center_name:
        raise ValidationError("Pickup center name is required for pickup mode", field="pickup_center_name")


def _replay_or_conflict(existing: DeliveryConfirmation, fingerprint: str) -> DeliveryConfirmation:
    if existing.request_hash == fingerprint:
        return existing
    raise AlreadyConfirmed(f"Delivery for order {existing.order_id} is already confirmed")


def confirm_delivery(
    db,
    order_id: str,
    delivery_mode: str,
    *,
    delivery_address: str = None,
    pickup_center_name: str = None,
    evidence: dict = None,
    satisfaction_declaration: str = None,
    confirmed_by: str = None,
) -> DeliveryConfirmation:
    delivery_address = _clean(delivery_address)
    pickup_center_name = _clean(pickup_center_name)
    satisfaction_declaration = _clean(satisfaction_declaration)
    fingerprint = None
    try:
        evidence = _clean_evidence(evidence)
        fingerprint = request_hash("delivery", {
            "order_id": order_id,
            "delivery_mode": delivery_mode,
            "delivery_address": delivery_address,
            "pickup_center_name": pickup_center_name,
            "evidence": evidence,
            "satisfaction_declaration": satisfaction_declaration,
        })

        order = orders.lock_order(db, order_id)
        existing = db.query(DeliveryConfirmation).filter_by(order_id=order_id).first()
        if existing is not None:
            record = _replay_or_conflict(existing, fingerprint)
            db.rollback()
            return record

        if order.order_status != OrderStatus.FULLY_PAID:
            raise NotFullyPaid(
                f"Order {order_id} must be fully paid before delivery confirmation "
                f"(currently {order.order_status})"
            )
        _validate(delivery_mode, delivery_address, pickup_center_name, satisfaction_declaration)

        record = DeliveryConfirmation(
            order_id=order_id,
            delivery_mode=delivery_mode,
            delivery_address=delivery_address,
            pickup_center_name=pickup_center_name,
            satisfaction_declaration=satisfaction_declaration,
            confirmed_by=confirmed_by,
            request_hash=fingerprint,
            created_at=utcnow(),
            **evidence,
        )
        db.add(record)
        events.record_event(db, order, events.DELIVERY_READY,
                            delivery_mode=delivery_mode, total_amount_paid=order.total_amount_paid)
        db.commit()
    except IntegrityError:
        # a concurrent request stored its confirmation first
        db.rollback()
        existing = db.query(DeliveryConfirmation).filter_by(order_id=order_id).first()
        if existing is None:
            raise
        return _replay_or_conflict(existing, fingerprint)
    except Exception:
        db.rollback()
        raise

    logger.info("delivery confirmed for order %s (%s)", order_id, delivery_mode)
    return record


def delivery_template(db, order_id: str) -> str:
    order = orders.get_order(db, order_id)
    if order.order_status != OrderStatus.FULLY_PAID:
        raise NotFullyPaid(f"Order {order_id} must be fully paid before delivery confirmation")
    return DECLARATION_TEMPLATE.format(
        customer=order.customer_name or "the customer",
        product=order.product_name or "the product",
        organization=order.organization_name or "the organization",
        order_id=order.id,
    )


def list_confirmed_deliveries(db, organization_id: str = None, customer_id: str = None):
    query = db.query(DeliveryConfirmation).join(Order, Order.id == DeliveryConfirmation.order_id)
    if organization_id:
        query = query.filter(Order.organization_id == organization_id)
    if customer_id:
        query = query.filter(Order.customer_id == customer_id)
    return query.order_by(DeliveryConfirmation.created_at.desc()).all()
