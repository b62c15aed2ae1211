"""
Stripe gateway calls.

Every network call is bounded by the configured timeout; gateway failures are raised as
UpstreamError so the API can answer 502 and the caller may retry.
"""
import json
import logging
from typing import Any, Dict, List, Optional

import stripe

from config import settings
from errors import InvalidSignature, UpstreamError

logger = logging.getLogger("bloomshop.payments")

SIGNATURE_TOLERANCE_SECONDS = 300
ALLOWED_SHIPPING_COUNTRIES = ["CA", "US"]

_configured_key: Optional[str] = None


def configure() -> None:
    global _configured_key
    if _configured_key == settings.stripe_secret_key:
        return
    stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = settings.stripe_max_retries
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)
    _configured_key = settings.stripe_secret_key


def build_line_items(order: Dict[str, Any]) -> List[Dict[str, Any]]:
    """One line per product, then delivery and tax as their own display lines."""
    currency = order.get("currency", "cad").lower()

    def line(name: str, amount: int, quantity: int = 1, description: Optional[str] = None) -> Dict[str, Any]:
        product_data = {"name": name}
        if description:
            product_data["description"] = description
        return {
            "price_data": {"currency": currency, "product_data": product_data, "unit_amount": int(amount)},
            "quantity": int(quantity),
        }

    items = [
        line(i["name"], i["price"], i["quantity"], i.get("tierName") and f"{i['tierName'].title()} arrangement")
        for i in order["items"]
    ]
    if order.get("deliveryFee"):
        items.append(line("Delivery", order["deliveryFee"]))
    if order.get("taxAmount"):
        items.append(line("Taxes", order["taxAmount"]))
    return items


def create_checkout_session(order: Dict[str, Any], customer_email: str, metadata: Dict[str, str]):
    configure()
    order_id = str(order["_id"])
    params = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": build_line_items(order),
        "customer_email": customer_email,
        "billing_address_collection": "required",
        "success_url": f"{settings.app_base_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}&order_id={order_id}",
        "cancel_url": f"{settings.app_base_url}/checkout/cancel?order_id={order_id}",
        "metadata": {"orderId": order_id, **metadata},
        "payment_intent_data": {"metadata": {"orderId": order_id, **metadata}},
    }
    if order.get("delivery", {}).get("method") == "delivery":
        params["shipping_address_collection"] = {"allowed_countries": ALLOWED_SHIPPING_COUNTRIES}
    try:
        return stripe.checkout.Session.create(**params)
    except stripe.StripeError as exc:
        logger.error("Stripe session creation failed for order %s: %s", order_id, exc)
        raise UpstreamError("Payment gateway unavailable, please retry", [str(getattr(exc, "user_message", "") or "")])


def retrieve_checkout_session(session_id: str):
    configure()
    try:
        return stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as exc:
        logger.error("Stripe session retrieval failed for %s: %s", session_id, exc)
        raise UpstreamError("Payment gateway unavailable, please retry")


def construct_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """
    Verify and decode a webhook payload.

    Every configured secret is tried (primary, test and live endpoints). With no secret
    configured, an unsigned payload is accepted only outside production.
    """
    text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
    secrets = settings.stripe_webhook_secrets
    if not secrets:
        if settings.is_production:
            raise InvalidSignature("Webhook signing secret is not configured")
        logger.warning("Accepting unsigned webhook payload (no signing secret, %s mode)", settings.app_env)
    else:
        if not signature:
            raise InvalidSignature("Missing Stripe-Signature header")
        failures = []
        for secret in secrets:
            try:
                stripe.WebhookSignature.verify_header(text, signature, secret, SIGNATURE_TOLERANCE_SECONDS)
                break
            except stripe.SignatureVerificationError as exc:
                failures.append(str(exc))
        else:
            raise InvalidSignature("Webhook signature verification failed", failures)
    try:
        event = json.loads(text)
    except ValueError:
        raise InvalidSignature("Webhook payload is not valid JSON")
    if not isinstance(event, dict) or "type" not in event:
        raise InvalidSignature("Webhook payload is not an event")
    return event
