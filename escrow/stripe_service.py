import logging

import stripe

from escrow import settings
from escrow.errors import GatewayRejected, UpstreamUnavailable

logger = logging.getLogger(__name__)

stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES

# failures worth retrying; anything else is a permanent refusal
TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def _gateway_error(action: str, exc: stripe.StripeError):
    message = getattr(exc, "user_message", None)
    if isinstance(exc, TRANSIENT_ERRORS):
        logger.warning("stripe %s failed: %s", action, exc)
        return UpstreamUnavailable("payment gateway", message or "Payment gateway is temporarily unavailable")
    logger.error("stripe %s rejected: %s", action, exc)
    return GatewayRejected("payment gateway", message or f"Payment gateway rejected the {action} request")


def create_payment(amount: int, currency: str, idempotency_key: str, metadata: dict = None):
    try:
        return stripe.PaymentIntent.create(
            amount=amount,
            currency=currency,
            automatic_payment_methods={"enabled": True},
            metadata=metadata or {},
            idempotency_key=idempotency_key
        )
    except stripe.StripeError as exc:
        raise _gateway_error("create payment", exc) from exc


def retrieve_payment(payment_intent_id: str):
    try:
        return stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as exc:
        raise _gateway_error("retrieve payment", exc) from exc


def cancel_payment(payment_intent_id: str):
    try:
        return stripe.PaymentIntent.cancel(
            payment_intent_id,
            idempotency_key=f"cancel:{payment_intent_id}"
        )
    except stripe.InvalidRequestError as exc:
        # an earlier attempt may have voided it already
        intent = retrieve_payment(payment_intent_id)
        if intent.status == "canceled":
            logger.info("payment intent %s was already cancelled", payment_intent_id)
            return intent
        raise _gateway_error("cancel payment", exc) from exc
    except stripe.StripeError as exc:
        raise _gateway_error("cancel payment", exc) from exc


def refund_payment(payment_intent_id: str):
    try:
        return stripe.Refund.create(
            payment_intent=payment_intent_id,
            idempotency_key=f"refund:{payment_intent_id}"
        )
    except stripe.InvalidRequestError as exc:
        if exc.code == "charge_already_refunded":
            logger.info("payment intent %s was already refunded", payment_intent_id)
            return None
        raise _gateway_error("refund", exc) from exc
    except stripe.StripeError as exc:
        raise _gateway_error("refund", exc) from exc
