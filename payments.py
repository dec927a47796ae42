"""
Stripe payment gateway adapter.

Creates PaymentIntents for checkout and turns verified webhook events into
payment outcomes on the order ledger. A webhook whose signature does not verify
against ``STRIPE_WEBHOOK_SECRET`` is rejected before it reaches the ledger.
"""
import logging
from typing import Any, Dict, Optional

import stripe

import config
import orders
from errors import UpstreamError, ValidationError, WebhookSignatureError

logger = logging.getLogger("artify.payments")

if config.STRIPE_SECRET:
    stripe.api_key = config.STRIPE_SECRET
stripe.max_network_retries = 2
stripe.default_http_client = stripe.RequestsClient(timeout=config.STRIPE_TIMEOUT)

# webhook event type -> payment outcome
EVENT_OUTCOMES = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "charge.refunded": "refunded",
}


def _field(obj: Any, key: str) -> Any:
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def create_payment_intent(amount: int, currency: Optional[str] = None,
                          metadata: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """Open a card PaymentIntent for ``amount`` in the currency's smallest unit."""
    if amount <= 0:
        raise ValidationError("Amount must be positive", reason="invalid_amount")
    metadata = {k: str(v) for k, v in (metadata or {}).items() if v is not None}
    params: Dict[str, Any] = {
        "amount": int(amount),
        "currency": (currency or config.PRIMARY_CURRENCY).lower(),
        "payment_method_types": ["card"],
        "description": f"{config.STORE_NAME} purchase",
        "metadata": metadata,
        "statement_descriptor_suffix": config.STRIPE_STATEMENT_DESCRIPTOR[:22],
    }
    if metadata.get("customer_name") and metadata.get("address"):
        params["shipping"] = {
            "name": metadata["customer_name"],
            "address": {
                "line1": metadata["address"],
                "city": metadata.get("city"),
                "state": metadata.get("state"),
                "postal_code": metadata.get("zipCode"),
                "country": metadata.get("country", "IN"),
            },
        }
    try:
        intent = stripe.PaymentIntent.create(**params)
    except stripe.StripeError as exc:
        logger.error("Stripe rejected payment intent creation: %s", exc)
        raise UpstreamError("Payment provider error", reason="payment_provider")
    logger.info("Created payment intent %s for %d %s", intent.id, params["amount"], params["currency"])
    return {"clientSecret": intent.client_secret, "paymentIntentId": intent.id}


def retrieve_payment_intent(intent_id: str) -> Dict[str, Any]:
    try:
        intent = stripe.PaymentIntent.retrieve(intent_id)
    except stripe.InvalidRequestError:
        raise ValidationError("Unknown payment intent", reason="unknown_payment_intent")
    except stripe.StripeError as exc:
        logger.error("Error retrieving payment intent %s: %s", intent_id, exc)
        raise UpstreamError("Payment provider error", reason="payment_provider")
    return {
        "id": intent.id,
        "amount": intent.amount,
        "currency": intent.currency,
        "status": intent.status,
    }


def construct_event(payload: bytes, signature: Optional[str]):
    if not config.STRIPE_WEBHOOK_SECRET:
        logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        raise WebhookSignatureError("Webhook secret not configured")
    if not signature:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        return stripe.Webhook.construct_event(payload, signature, config.STRIPE_WEBHOOK_SECRET)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise WebhookSignatureError("Invalid signature")
    except ValueError:
        raise WebhookSignatureError("Invalid payload", reason="invalid_payload")


def handle_event(event) -> Optional[orders.ReconcileResult]:
    event_type = _field(event, "type")
    outcome = EVENT_OUTCOMES.get(event_type)
    if outcome is None:
        logger.info("Unhandled event type %s", event_type)
        return None

    obj = _field(_field(event, "data"), "object")
    if event_type == "charge.refunded" and not _field(obj, "refunded"):
        logger.info("Partial refund on charge %s, payment status unchanged", _field(obj, "id"))
        return None
    intent_id = _field(obj, "payment_intent") if event_type.startswith("charge.") else _field(obj, "id")
    if not intent_id:
        logger.warning("Event %s carries no payment intent id", _field(event, "id"))
        return None

    result = orders.reconcile_payment_event(intent_id, outcome, event_type)
    logger.info("Event %s for intent %s: %s", event_type, intent_id, result.status)
    return result
