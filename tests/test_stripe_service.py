import pytest
import stripe

from escrow import stripe_service
from escrow.errors import GatewayRejected, UpstreamUnavailable


@pytest.mark.parametrize("error", [
    stripe.APIConnectionError("connection reset"),
    stripe.RateLimitError("slow down"),
    stripe.APIError("internal error"),
])
def test_transient_gateway_errors_are_retryable(mocker, error):
    mocker.patch("stripe.PaymentIntent.create", side_effect=error)

    with pytest.raises(UpstreamUnavailable) as exc:
        stripe_service.create_payment(1_000, "ngn", "order-1:full")

    assert exc.value.retryable


@pytest.mark.parametrize("error", [
    stripe.InvalidRequestError("Invalid currency: xyz", "currency"),
    stripe.CardError("Your card was declined", "card", "card_declined"),
    stripe.AuthenticationError("Invalid API key"),
])
def test_permanent_gateway_errors_are_not_retryable(mocker, error):
    mocker.patch("stripe.PaymentIntent.create", side_effect=error)

    with pytest.raises(GatewayRejected) as exc:
        stripe_service.create_payment(1_000, "xyz", "order-1:full")

    assert not exc.value.retryable
    assert exc.value.status_code == 502


def test_cancel_is_idempotent_at_the_gateway(mocker):
    cancel = mocker.patch("stripe.PaymentIntent.cancel")

    stripe_service.cancel_payment("pi_1")

    assert cancel.call_args.kwargs["idempotency_key"] == "cancel:pi_1"


def test_cancel_of_already_cancelled_intent_succeeds(mocker):
    mocker.patch("stripe.PaymentIntent.cancel",
                 side_effect=stripe.InvalidRequestError("status is canceled", "intent"))
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=mocker.Mock(status="canceled"))

    assert stripe_service.cancel_payment("pi_1").status == "canceled"


def test_cancel_of_paid_intent_is_rejected(mocker):
    mocker.patch("stripe.PaymentIntent.cancel",
                 side_effect=stripe.InvalidRequestError("status is succeeded", "intent"))
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=mocker.Mock(status="succeeded"))

    with pytest.raises(GatewayRejected):
        stripe_service.cancel_payment("pi_1")


def test_refund_of_already_refunded_charge_succeeds(mocker):
    mocker.patch("stripe.Refund.create", side_effect=stripe.InvalidRequestError(
        "Charge ch_1 has already been refunded.", None, code="charge_already_refunded"))

    assert stripe_service.refund_payment("pi_1") is None


def test_retrieve_payment(mocker):
    retrieve = mocker.patch("stripe.PaymentIntent.retrieve", return_value=mocker.Mock(status="succeeded"))

    assert stripe_service.retrieve_payment("pi_1").status == "succeeded"
    retrieve.assert_called_once_with("pi_1")
