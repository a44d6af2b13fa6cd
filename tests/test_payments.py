import pytest

from escrow import orders, payments
from escrow.errors import (
    AlreadySettled,
    InvalidTransition,
    NotFound,
    OverpaymentError,
    UpstreamUnavailable,
    ValidationError,
)
from escrow.models import Order, OrderEvent, OrderStatus, PaymentIntent, new_id, utcnow
from escrow.payments import OrderContext, confirm_gateway_payment, initiate_payment, verify_payment


def test_upfront_and_remaining_installments(db, open_order, confirm, gateway):
    # price 10,000 with 40% upfront
    first = open_order(payment_type="upfront")
    assert first.amount_due == 4_000
    assert first.payment_reference == f"{first.order_id}:upfront"
    assert first.client_secret == "secret_test_1"

    order = db.get(Order, first.order_id)
    assert order.order_status == OrderStatus.PENDING
    assert order.total_amount_paid == 0

    order = confirm(first)
    assert order.order_status == OrderStatus.PARTIALLY_PAID
    assert order.upfront_remaining_balance == 6_000

    second = initiate_payment(db, OrderContext(order_id=first.order_id), "remaining")
    assert second.amount_due == 6_000

    order = confirm(second)
    assert order.order_status == OrderStatus.FULLY_PAID
    assert order.total_amount_paid == 10_000
    assert order.upfront_remaining_balance == 0
    assert gateway.call_count == 2


def test_sub_service_charges_ride_with_first_leg(db, open_order, confirm):
    charges = [{"code": "express", "price": 1_000}, {"code": "gift_wrap", "price": 250}]
    first = open_order(payment_type="upfront", charges=charges)
    assert first.amount_due == 4_000 + 1_250

    confirm(first)
    second = initiate_payment(db, OrderContext(order_id=first.order_id), "remaining")
    assert second.amount_due == 6_000

    order = confirm(second)
    assert order.order_status == OrderStatus.FULLY_PAID
    assert order.total_amount_paid == order.required_amount == 11_250
    assert [c.code for c in order.sub_service_charges] == ["express", "gift_wrap"]


def test_sub_service_charges_are_fixed_after_creation(db, open_order):
    first = open_order(payment_type="upfront", charges=[{"code": "express", "price": 1_000}])
    with pytest.raises(ValidationError):
        initiate_payment(db, OrderContext(order_id=first.order_id), "upfront",
                         [{"code": "express", "price": 2_000}])


def test_remaining_before_upfront_is_invalid(db, open_order):
    first = open_order(payment_type="upfront")
    with pytest.raises(InvalidTransition):
        initiate_payment(db, OrderContext(order_id=first.order_id), "remaining")


def test_remaining_on_new_order_is_invalid(db, gateway):
    context = OrderContext(product_id="p", organization_id="o", customer_id="c", product_price=500)
    with pytest.raises(InvalidTransition):
        initiate_payment(db, context, "remaining")
    assert db.query(Order).count() == 0
    gateway.assert_not_called()


def test_initiating_on_fully_paid_order_fails(db, paid_order):
    order = paid_order()
    with pytest.raises(AlreadySettled):
        initiate_payment(db, OrderContext(order_id=order.id), "full")


def test_upfront_needs_split_percentage(db, open_order):
    first = open_order(percentage=0, payment_type="full")
    with pytest.raises(InvalidTransition):
        initiate_payment(db, OrderContext(order_id=first.order_id), "upfront")


def test_open_intent_is_reused(db, open_order, gateway):
    first = open_order(payment_type="upfront")
    again = initiate_payment(db, OrderContext(order_id=first.order_id), "upfront")

    assert again == first
    assert gateway.call_count == 1
    assert db.query(PaymentIntent).count() == 1


def test_idempotency_key_reuses_order(db, gateway):
    context = OrderContext(product_id="p", organization_id="o", customer_id="c",
                           product_price=2_000, idempotency_key="checkout-77")
    first = initiate_payment(db, context, "full")
    second = initiate_payment(db, context, "full")

    assert first.order_id == second.order_id
    assert db.query(Order).count() == 1
    assert gateway.call_count == 1


def test_gateway_failure_leaves_no_order(db, mocker):
    mocker.patch("escrow.payments.create_payment",
                 side_effect=UpstreamUnavailable("payment gateway"))
    context = OrderContext(product_id="p", organization_id="o", customer_id="c", product_price=2_000)

    with pytest.raises(UpstreamUnavailable) as exc:
        initiate_payment(db, context, "full")

    assert exc.value.retryable
    assert db.query(Order).count() == 0
    assert db.query(OrderEvent).count() == 0


@pytest.mark.parametrize("missing", ["product_id", "organization_id", "customer_id", "product_price"])
def test_new_order_requires_references(db, gateway, missing):
    fields = dict(product_id="p", organization_id="o", customer_id="c", product_price=2_000)
    fields[missing] = None
    with pytest.raises(ValidationError) as exc:
        initiate_payment(db, OrderContext(**fields), "full")
    assert exc.value.field == missing


def test_zero_price_has_nothing_to_pay(db, gateway):
    context = OrderContext(product_id="p", organization_id="o", customer_id="c", product_price=0)
    with pytest.raises(ValidationError):
        initiate_payment(db, context, "full")


def test_unknown_order(db, gateway):
    with pytest.raises(NotFound):
        initiate_payment(db, OrderContext(order_id="nope"), "full")


def test_confirmation_is_applied_once(db, open_order):
    first = open_order(payment_type="upfront")
    intent_id = db.query(PaymentIntent).filter_by(reference=first.payment_reference).one().id

    confirm_gateway_payment(db, intent_id)
    order = confirm_gateway_payment(db, intent_id)

    assert order.total_amount_paid == 4_000
    assert order.order_status == OrderStatus.PARTIALLY_PAID
    status_events = db.query(OrderEvent).filter_by(event_type="order.status_changed").count()
    assert status_events == 1


def test_competing_first_leg_is_refused(db, open_order, gateway):
    upfront = open_order(payment_type="upfront")

    with pytest.raises(InvalidTransition):
        initiate_payment(db, OrderContext(order_id=upfront.order_id), "full")

    assert gateway.call_count == 1
    assert db.query(PaymentIntent).count() == 1


def test_overpaying_confirmation_is_refunded(db, open_order, confirm, mocker):
    refund = mocker.patch("escrow.payments.refund_payment")
    upfront = open_order(payment_type="upfront")
    # a second first leg paid at the gateway behind the order's back
    db.add(PaymentIntent(id="pi_stray", reference=f"{upfront.order_id}:stray", order_id=upfront.order_id,
                         payment_type="full", amount=10_000, currency="ngn", status="created"))
    db.commit()
    confirm(upfront)

    with pytest.raises(OverpaymentError):
        confirm_gateway_payment(db, "pi_stray")

    refund.assert_called_once_with("pi_stray")
    assert db.get(PaymentIntent, "pi_stray").status == "refunded"
    order = db.get(Order, upfront.order_id)
    assert order.total_amount_paid == 4_000
    refunded = db.query(OrderEvent).filter_by(event_type="payment.refunded").one()
    assert refunded.payload()["reason"] == "overpayment"


def test_payment_confirmed_after_cancellation_is_refunded(db, open_order, confirm, mocker):
    mocker.patch("escrow.orders.cancel_payment")
    refund = mocker.patch("escrow.payments.refund_payment")
    upfront = open_order(payment_type="upfront")
    orders.cancel_order(db, upfront.order_id)

    with pytest.raises(InvalidTransition):
        confirm(upfront)

    refund.assert_called_once()
    intent = db.query(PaymentIntent).filter_by(reference=upfront.payment_reference).one()
    assert intent.status == "refunded"
    assert db.get(Order, upfront.order_id).total_amount_paid == 0


def test_failed_refund_leaves_payment_for_redelivery(db, open_order, confirm, mocker):
    mocker.patch("escrow.orders.cancel_payment")
    mocker.patch("escrow.payments.refund_payment", side_effect=UpstreamUnavailable("payment gateway"))
    upfront = open_order(payment_type="upfront")
    orders.cancel_order(db, upfront.order_id)

    with pytest.raises(UpstreamUnavailable):
        confirm(upfront)

    intent = db.query(PaymentIntent).filter_by(reference=upfront.payment_reference).one()
    assert intent.status == "cancelled"
    assert db.query(OrderEvent).filter_by(event_type="payment.refunded").count() == 0


def test_verify_payment_applies_gateway_success(db, open_order, mocker):
    retrieve = mocker.patch("escrow.payments.retrieve_payment", return_value=mocker.Mock(status="succeeded"))
    upfront = open_order(payment_type="upfront")

    result = verify_payment(db, upfront.payment_reference)

    assert result.status == "succeeded"
    assert result.order_status == OrderStatus.PARTIALLY_PAID
    assert result.total_amount_paid == 4_000

    again = verify_payment(db, upfront.payment_reference)
    assert again.total_amount_paid == 4_000
    retrieve.assert_called_once()


def test_verify_payment_still_processing(db, open_order, mocker):
    mocker.patch("escrow.payments.retrieve_payment", return_value=mocker.Mock(status="processing"))
    upfront = open_order(payment_type="upfront")

    result = verify_payment(db, upfront.payment_reference)

    assert result.status == "created"
    assert result.order_status == OrderStatus.PENDING


def test_verify_unknown_payment(db):
    with pytest.raises(NotFound):
        verify_payment(db, "nope:full")


def test_idempotency_key_race_reuses_winning_order(db, gateway, session_factory, mocker):
    void = mocker.patch("escrow.payments.cancel_payment")
    winner_id = new_id()
    fake_create = gateway.side_effect

    def create_while_rival_commits(amount, currency, idempotency_key, metadata=None):
        if gateway.call_count == 1:
            rival = session_factory()
            now = utcnow()
            rival.add(Order(id=winner_id, product_id="p", organization_id="o", customer_id="c",
                            product_price=2_000, currency="ngn", upfront_payment_percentage=50,
                            payment_type="full", total_amount_paid=0, order_status=OrderStatus.PENDING,
                            idempotency_key="checkout-9", created_at=now, updated_at=now))
            rival.commit()
            rival.close()
        return fake_create(amount, currency, idempotency_key, metadata)

    gateway.side_effect = create_while_rival_commits
    context = OrderContext(product_id="p", organization_id="o", customer_id="c",
                           product_price=2_000, idempotency_key="checkout-9")

    initiation = initiate_payment(db, context, "full")

    assert initiation.order_id == winner_id
    assert db.query(Order).count() == 1
    void.assert_called_once_with("pi_test_1")

def test_confirmation_for_unknown_intent(db):
    with pytest.raises(NotFound):
        confirm_gateway_payment(db, "pi_missing")


def test_payment_reference_format():
    assert payments.payment_reference("abc", payments.PaymentType.REMAINING) == "abc:remaining"
