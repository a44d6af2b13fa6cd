"""
Order aggregate: the legal status transitions, payment application and the
per-order lock every mutating operation goes through.
"""

import logging
from datetime import timedelta

from sqlalchemy import func, or_
from sqlalchemy.orm.exc import StaleDataError

from escrow import events
from escrow.calculator import PaymentType, parse_payment_type
from escrow.errors import (
    AlreadySettled,
    ConcurrentUpdate,
    InvalidTransition,
    NotFound,
    OverpaymentError,
    ValidationError,
)
from escrow.models import Order, OrderStatus, utcnow
from escrow.stripe_service import cancel_payment, refund_payment

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PARTIALLY_PAID, OrderStatus.FULLY_PAID, OrderStatus.CANCELLED},
    OrderStatus.PARTIALLY_PAID: {OrderStatus.PARTIALLY_PAID, OrderStatus.FULLY_PAID, OrderStatus.CANCELLED},
    OrderStatus.FULLY_PAID: set(),
    OrderStatus.CANCELLED: set(),
}

MAX_PAGE_SIZE = 100


def derive_status(total_paid: int, required: int) -> str:
    if total_paid <= 0:
        return OrderStatus.PENDING
    if total_paid < required:
        return OrderStatus.PARTIALLY_PAID
    return OrderStatus.FULLY_PAID


def touch(order):
    now = utcnow()
    # updated_at never goes backwards, even on clock skew or same-tick updates
    if order.updated_at is not None and now <= order.updated_at:
        now = order.updated_at + timedelta(microseconds=1)
    order.updated_at = now


def transition(order, target: str, **details):
    current = order.order_status
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Order {order.id} cannot move from {current} to {target}")
    order.order_status = target
    touch(order)
    logger.info("order %s: %s -> %s", order.id, current, target)
    return events.order_event(order, events.STATUS_CHANGED, previous_status=current, status=target, **details)


def ensure_open_for_payment(order):
    if order.order_status == OrderStatus.FULLY_PAID:
        raise AlreadySettled(f"Order {order.id} is already fully paid")
    if order.order_status == OrderStatus.CANCELLED:
        raise InvalidTransition(f"Order {order.id} is cancelled and accepts no payments")


def apply_payment(order, amount: int, payment_type):
    """Apply a confirmed payment to the order.

    Returns the status-change event when the status moved, else ``None``.
    Nothing on the order is touched when a guard fails.
    """
    payment_type = parse_payment_type(payment_type)
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("payment amount must be a positive integer", field="amount")
    ensure_open_for_payment(order)

    required = order.required_amount
    new_total = order.total_amount_paid + amount
    if new_total > required:
        raise OverpaymentError(
            f"Payment of {amount} would bring order {order.id} to {new_total}, above {required}",
            details={"required_amount": required, "total_amount_paid": order.total_amount_paid},
        )

    target = derive_status(new_total, required)
    event = None
    if target != order.order_status:
        event = transition(order, target)
    else:
        touch(order)
    order.total_amount_paid = new_total
    order.payment_type = payment_type.value
    return event


def get_order(db, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound("Order", order_id)
    return order


def lock_order(db, order_id: str) -> Order:
    order = db.query(Order).filter_by(id=order_id).with_for_update().populate_existing().first()
    if order is None:
        raise NotFound("Order", order_id)
    return order


def commit(db):
    """Commit, turning a lost optimistic-lock race into a retryable error."""
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrentUpdate("The order was modified by another request; retry") from exc


def cancel_order(db, order_id: str, reason: str = "", cancelled_by: str = None) -> Order:
    try:
        order = lock_order(db, order_id)
        if order.order_status not in (OrderStatus.PENDING, OrderStatus.PARTIALLY_PAID):
            raise InvalidTransition(
                f"Order {order.id} is {order.order_status} and can no longer be cancelled"
            )

        # settle the gateway side first; a failure here must leave the order as is
        for intent in order.payment_intents:
            if intent.status == "created":
                cancel_payment(intent.id)
                intent.status = "cancelled"
            elif intent.status == "succeeded":
                refund_payment(intent.id)
                intent.status = "refunded"

        db.add(transition(order, OrderStatus.CANCELLED, reason=reason or "", cancelled_by=cancelled_by))
        commit(db)
    except Exception:
        db.rollback()
        raise
    return order


def list_orders(db, status=None, organization_id=None, customer_id=None, search=None, page=1, limit=50):
    if status is not None and status not in OrderStatus.ALL:
        raise ValidationError(f"Unknown order status: {status!r}", field="status")
    if page < 1:
        raise ValidationError("page must be 1 or greater", field="page")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")

    query = db.query(Order)
    if status:
        query = query.filter(Order.order_status == status)
    if organization_id:
        query = query.filter(Order.organization_id == organization_id)
    if customer_id:
        query = query.filter(Order.customer_id == customer_id)
    search = (search or "").strip()
    if search:
        pattern = f"%{search.lower()}%"
        query = query.filter(or_(
            func.lower(Order.product_name).like(pattern),
            func.lower(Order.organization_name).like(pattern),
            func.lower(Order.customer_name).like(pattern),
            func.lower(Order.customer_email).like(pattern),
        ))

    total = query.count()
    items = (
        query.order_by(Order.created_at.desc(), Order.id)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def send_payment_reminder(db, order_id: str, requested_by: str = None):
    try:
        order = get_order(db, order_id)
        balance = order.upfront_remaining_balance
        if order.order_status != OrderStatus.PARTIALLY_PAID or balance <= 0:
            raise InvalidTransition(f"Order {order.id} has no outstanding installment")
        event = events.record_event(
            db, order, events.PAYMENT_REMINDER,
            remaining_balance=balance,
            payment_type=PaymentType.REMAINING.value,
            requested_by=requested_by,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return event
