"""
Payment intake: turns a payment request into a gateway intent, and applies
the gateway's confirmation back onto the order.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from escrow import events, orders
from escrow.calculator import (
    PaymentType,
    compute_amount,
    compute_total,
    normalize_percentage,
    parse_payment_type,
    sum_charges,
)
from escrow.errors import (
    AlreadySettled,
    ConcurrentUpdate,
    EscrowError,
    InvalidTransition,
    NotFound,
    OverpaymentError,
    ValidationError,
)
from escrow.models import Order, OrderStatus, PaymentIntent, SubServiceCharge, new_id, utcnow
from escrow.settings import DEFAULT_CURRENCY
from escrow.stripe_service import cancel_payment, create_payment, refund_payment, retrieve_payment

logger = logging.getLogger(__name__)


@dataclass
class OrderContext:
    """Either an existing ``order_id`` or everything needed to open an order."""

    order_id: Optional[str] = None
    product_id: Optional[str] = None
    organization_id: Optional[str] = None
    customer_id: Optional[str] = None
    product_price: Optional[int] = None
    upfront_payment_percentage: Optional[int] = None
    currency: Optional[str] = None
    product_name: Optional[str] = None
    organization_name: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass
class PaymentInitiation:
    order_id: str
    amount_due: int
    payment_reference: str
    client_secret: Optional[str]
    payment_type: str


@dataclass
class PaymentVerification:
    payment_reference: str
    status: str
    amount: int
    order_id: str
    order_status: str
    total_amount_paid: int


FIRST_LEGS = (PaymentType.FULL, PaymentType.UPFRONT)


def payment_reference(order_id: str, payment_type: PaymentType) -> str:
    return f"{order_id}:{payment_type.value}"


def _normalize_charges(sub_service_charges) -> List[dict]:
    charges = []
    for charge in sub_service_charges or ():
        code = charge["code"] if isinstance(charge, dict) else charge.code
        price = charge["price"] if isinstance(charge, dict) else charge.price
        if not code or not str(code).strip():
            raise ValidationError("sub-service charge code is required", field="sub_service_charges.code")
        charges.append({"code": str(code).strip(), "price": price})
    sum_charges(charges)
    return charges


def _require(value, name: str):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{name} is required", field=name)
    return value


def _open_order(db, context: OrderContext, payment_type: PaymentType, charges: List[dict]):
    if context.idempotency_key:
        existing = (
            db.query(Order).filter_by(idempotency_key=context.idempotency_key).with_for_update().first()
        )
        if existing is not None:
            return existing, False

    if payment_type is PaymentType.REMAINING:
        raise InvalidTransition("A remaining payment needs an order with a paid upfront installment")

    percentage = normalize_percentage(context.upfront_payment_percentage)
    # validates the price
    compute_amount(_require(context.product_price, "product_price"), percentage, PaymentType.FULL)

    now = utcnow()
    order = Order(
        id=new_id(),
        product_id=_require(context.product_id, "product_id"),
        organization_id=_require(context.organization_id, "organization_id"),
        customer_id=_require(context.customer_id, "customer_id"),
        product_name=context.product_name,
        organization_name=context.organization_name,
        customer_name=context.customer_name,
        customer_email=context.customer_email,
        product_price=context.product_price,
        currency=(context.currency or DEFAULT_CURRENCY).lower(),
        upfront_payment_percentage=percentage,
        payment_type=payment_type.value,
        total_amount_paid=0,
        order_status=OrderStatus.PENDING,
        idempotency_key=context.idempotency_key,
        created_at=now,
        updated_at=now,
    )
    order.sub_service_charges = [
        SubServiceCharge(position=i, code=c["code"], price=c["price"]) for i, c in enumerate(charges)
    ]
    db.add(order)
    events.record_event(db, order, events.ORDER_CREATED,
                        required_amount=order.required_amount,
                        upfront_payment_percentage=percentage)
    logger.info("order %s opened for product %s", order.id, order.product_id)
    return order, True


def _check_charges_unchanged(order: Order, charges: List[dict]):
    existing = [{"code": c.code, "price": c.price} for c in order.sub_service_charges]
    if charges != existing:
        raise ValidationError(
            "Sub-service charges are fixed when the order is created",
            field="sub_service_charges",
        )


def _succeeded_intent(order: Order, payment_type: PaymentType):
    for intent in order.payment_intents:
        if intent.payment_type == payment_type.value and intent.status == "succeeded":
            return intent
    return None


def _other_open_first_leg(order: Order, payment_type: PaymentType):
    """An unpaid full/upfront intent competing with the one being opened."""
    if payment_type not in FIRST_LEGS:
        return None
    first_legs = {leg.value for leg in FIRST_LEGS}
    for intent in order.payment_intents:
        if (intent.payment_type in first_legs and intent.payment_type != payment_type.value
                and intent.status == "created"):
            return intent
    return None


def _amount_due(order: Order, payment_type: PaymentType) -> int:
    orders.ensure_open_for_payment(order)
    pct = order.upfront_payment_percentage
    charges = order.sub_service_charges

    if payment_type is PaymentType.FULL:
        if order.order_status != OrderStatus.PENDING:
            raise InvalidTransition(
                f"Order {order.id} is {order.order_status}; pay the remaining installment instead"
            )
        return compute_total(order.product_price, pct, PaymentType.FULL, charges)

    if payment_type is PaymentType.UPFRONT:
        if order.order_status != OrderStatus.PENDING:
            raise InvalidTransition(f"Order {order.id} already has its upfront installment")
        if pct <= 0:
            raise InvalidTransition(f"Order {order.id} does not allow split payment")
        return compute_total(order.product_price, pct, PaymentType.UPFRONT, charges)

    if order.order_status != OrderStatus.PARTIALLY_PAID or _succeeded_intent(order, PaymentType.UPFRONT) is None:
        raise InvalidTransition(f"Order {order.id} has no paid upfront installment yet")
    return compute_amount(order.product_price, pct, PaymentType.REMAINING)


def _creation_race_lost(db, context: OrderContext, reference) -> bool:
    if reference and db.query(PaymentIntent).filter_by(reference=reference).first() is not None:
        return True
    if context.idempotency_key and not context.order_id:
        return db.query(Order).filter_by(idempotency_key=context.idempotency_key).first() is not None
    return False


def _void_orphan(db, gateway_intent):
    # a lost reference race shares the winner's gateway intent; leave that one alone
    if gateway_intent is None or db.get(PaymentIntent, gateway_intent.id) is not None:
        return
    try:
        cancel_payment(gateway_intent.id)
    except EscrowError as exc:
        logger.warning("could not void orphaned payment intent %s: %s", gateway_intent.id, exc.message)


def _initiate(db, context: OrderContext, payment_type: PaymentType, sub_service_charges) -> PaymentInitiation:
    reference = gateway_intent = None
    try:
        charges = _normalize_charges(sub_service_charges)
        if context.order_id:
            order, created = orders.lock_order(db, context.order_id), False
        else:
            order, created = _open_order(db, context, payment_type, charges)
        if not created and sub_service_charges is not None:
            _check_charges_unchanged(order, charges)

        amount_due = _amount_due(order, payment_type)
        if amount_due <= 0:
            raise ValidationError(f"Nothing is due for a {payment_type.value} payment", field="payment_type")

        reference = payment_reference(order.id, payment_type)
        intent = db.query(PaymentIntent).filter_by(reference=reference).first()
        if intent is not None and intent.status == "created":
            existing = PaymentInitiation(
                order.id, intent.amount, reference, intent.client_secret, payment_type.value
            )
            db.rollback()
            return existing
        if intent is not None:
            raise InvalidTransition(f"Payment {reference} is already {intent.status}")
        competing = _other_open_first_leg(order, payment_type)
        if competing is not None:
            raise InvalidTransition(
                f"Order {order.id} already has an open {competing.payment_type} payment ({competing.reference})"
            )

        gateway_intent = create_payment(
            amount_due,
            order.currency,
            reference,
            metadata={"order_id": order.id, "payment_type": payment_type.value},
        )
        db.add(PaymentIntent(
            id=gateway_intent.id,
            reference=reference,
            order_id=order.id,
            payment_type=payment_type.value,
            amount=amount_due,
            currency=order.currency,
            client_secret=gateway_intent.client_secret,
            status="created",
            created_at=utcnow(),
        ))
        if order.order_status == OrderStatus.PENDING:
            order.payment_type = payment_type.value
        orders.touch(order)
        orders.commit(db)
    except IntegrityError as exc:
        db.rollback()
        if not _creation_race_lost(db, context, reference):
            raise
        _void_orphan(db, gateway_intent)
        raise ConcurrentUpdate("The payment was initiated by a concurrent request; retry") from exc
    except Exception:
        db.rollback()
        raise

    logger.info("payment %s initiated for %s", reference, amount_due)
    return PaymentInitiation(order.id, amount_due, reference, gateway_intent.client_secret, payment_type.value)


def initiate_payment(db, context: OrderContext, payment_type, sub_service_charges=None) -> PaymentInitiation:
    """Create (or reuse) the gateway intent for the next installment of an order.

    The order is not marked paid here; that happens when the gateway
    confirms the intent through ``confirm_gateway_payment``. A request that
    loses a creation race is replayed once so it picks up the winner's order.
    """
    payment_type = parse_payment_type(payment_type)
    try:
        return _initiate(db, context, payment_type, sub_service_charges)
    except ConcurrentUpdate:
        logger.info("retrying %s payment initiation after a concurrent update", payment_type.value)
        return _initiate(db, context, payment_type, sub_service_charges)


def _refund_rejected(db, order: Order, intent: PaymentIntent, rejection: EscrowError):
    """Money the order cannot take goes straight back to the customer."""
    refund_payment(intent.id)
    intent.status = "refunded"
    intent.confirmed_at = utcnow()
    events.record_event(db, order, events.PAYMENT_REFUNDED,
                        payment_reference=intent.reference, amount=intent.amount, reason=rejection.kind)
    orders.commit(db)
    logger.warning("payment %s refunded: %s", intent.reference, rejection.message)


def confirm_gateway_payment(db, gateway_intent_id: str) -> Order:
    """Apply a gateway-confirmed intent to its order exactly once.

    A confirmation the order cannot accept (cancelled intent or order,
    settled order, overpayment) is refunded at the gateway and the
    rejection is raised to the caller.
    """
    try:
        intent = db.get(PaymentIntent, gateway_intent_id)
        if intent is None:
            raise NotFound("Payment", gateway_intent_id)
        order = orders.lock_order(db, intent.order_id)
        # re-read under the order lock so concurrent callbacks serialize here
        db.refresh(intent)
        if intent.status == "succeeded":
            db.rollback()
            return order
        if intent.status == "refunded":
            raise InvalidTransition(f"Payment {intent.reference} was refunded")

        if intent.status == "cancelled":
            rejection = InvalidTransition(f"Payment {intent.reference} was cancelled before it succeeded")
        else:
            try:
                event = orders.apply_payment(order, intent.amount, intent.payment_type)
                rejection = None
            except (OverpaymentError, AlreadySettled, InvalidTransition) as exc:
                rejection = exc
        if rejection is not None:
            _refund_rejected(db, order, intent, rejection)
            raise rejection

        if event is not None:
            db.add(event)
        intent.status = "succeeded"
        intent.confirmed_at = utcnow()
        orders.commit(db)
    except Exception:
        db.rollback()
        raise
    logger.info("payment %s confirmed, order %s is %s", intent.reference, order.id, order.order_status)
    return order


def get_intent(db, reference: str) -> PaymentIntent:
    intent = db.query(PaymentIntent).filter_by(reference=reference).first()
    if intent is None:
        raise NotFound("Payment", reference)
    return intent


def verify_payment(db, reference: str) -> PaymentVerification:
    """Ask the gateway about an initiated payment and apply it if it went through.

    Lets the client confirm a payment without waiting for the webhook; both
    paths end in ``confirm_gateway_payment`` so the payment is applied once.
    """
    intent = get_intent(db, reference)
    intent_id = intent.id
    if intent.status == "created":
        gateway_intent = retrieve_payment(intent_id)
        if gateway_intent.status == "succeeded":
            confirm_gateway_payment(db, intent_id)
        else:
            logger.info("payment %s is %s at the gateway", reference, gateway_intent.status)
    db.rollback()

    intent = db.get(PaymentIntent, intent_id)
    order = intent.order
    return PaymentVerification(
        payment_reference=reference,
        status=intent.status,
        amount=intent.amount,
        order_id=order.id,
        order_status=order.order_status,
        total_amount_paid=order.total_amount_paid,
    )
