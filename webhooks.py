"""
Stripe webhook reconciliation.

Events arrive at least once and in any order. Each handler is a conditional update or an
upsert keyed by a gateway id, so replaying an event changes nothing. Only a bad signature
is reported back as a failure; processing errors are logged and acknowledged, since a
gateway retry would only replay the same error.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import inventory
import order_store
import payments
from database import collection, now
from errors import NotFound
from schemas import Payment

logger = logging.getLogger("bloomshop.webhooks")

PENDING_PAYMENT_STATES = ["pending", "processing", "requires_action"]


def record_payment(order: Dict[str, Any], session: Dict[str, Any], at: datetime) -> bool:
    """Insert the payment record for a completed session unless it already exists."""
    intent_id = session.get("payment_intent")
    key = {"stripePaymentIntentId": intent_id} if intent_id else {"stripeSessionId": session.get("id")}
    doc = Payment(
        stripePaymentIntentId=intent_id,
        stripeSessionId=session.get("id"),
        orderId=str(order["_id"]),
        customerId=str(order["customerId"]),
        amount=int(session.get("amount_total") or order.get("total") or 0),
        currency=session.get("currency") or order.get("currency", "cad"),
        status="succeeded",
        paidAt=at,
        stripeCustomerId=session.get("customer"),
        metadata={"shopId": str(order["shopId"]), "orderNumber": order.get("orderNumber")},
    ).model_dump()
    for field in key:
        doc.pop(field, None)
    doc["createdAt"] = at
    doc["updatedAt"] = at
    try:
        result = collection("payment").update_one(key, {"$setOnInsert": doc}, upsert=True)
    except DuplicateKeyError:
        # Concurrent delivery of the same event won the upsert.
        logger.info("Payment for %s already recorded", key)
        return False
    return result.upserted_id is not None


def _apply_paid(selector: Dict[str, Any], patch: Dict[str, Any], at: datetime) -> Optional[Dict[str, Any]]:
    order = order_store.update_payment(selector, patch, expect={"payment.status": "pending"}, status="confirmed", at=at)
    if order is None:
        # Shop already moved the order forward by hand; record the payment without touching status.
        order = order_store.update_payment(
            selector, patch, at=at,
            expect={"payment.status": "pending", "status": {"$nin": ["pending", "cancelled"]}},
        )
    return order


def _metadata_selector(session: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    order_id = (session.get("metadata") or {}).get("orderId")
    if not order_id:
        return None
    try:
        return order_store.by_id(order_id)
    except NotFound:
        logger.warning("Session %s carries an invalid order id %r", session.get("id"), order_id)
        return None


def handle_checkout_session_completed(session: Dict[str, Any]) -> str:
    session_id = session.get("id")
    intent_id = session.get("payment_intent")
    at = now()
    patch = {"status": "succeeded", "intentId": intent_id, "paidAt": at}

    order = _apply_paid(order_store.by_session(session_id), patch, at)
    fallback = _metadata_selector(session)
    if order is None and fallback is not None:
        # The event can beat the write that stores the session id on the order.
        order = _apply_paid(fallback, {**patch, "sessionId": session_id}, at)
    if order is None:
        order = order_store.get_by_session(session_id)
        if order is None and fallback is not None:
            order = collection(order_store.COLLECTION).find_one(fallback)
        if order is None:
            logger.warning("No order for checkout session %s", session_id)
            return "order_not_found"
        if order["payment"].get("status") != "succeeded":
            logger.warning("Session %s completed but order %s is %s with payment %s; not confirming",
                           session_id, order.get("orderNumber"), order.get("status"), order["payment"].get("status"))
            return "ignored"
        outcome = "duplicate"
    else:
        outcome = "confirmed"
        logger.info("Order %s confirmed by session %s", order.get("orderNumber"), session_id)

    if record_payment(order, session, at):
        logger.info("Payment recorded for order %s (intent %s)", order.get("orderNumber"), intent_id)
    inventory.current_strategy().on_payment_confirmed(order)
    return outcome


def handle_payment_intent_succeeded(intent: Dict[str, Any]) -> str:
    intent_id = intent.get("id")
    at = now()
    payment = collection("payment").find_one_and_update(
        {"stripePaymentIntentId": intent_id, "status": {"$in": PENDING_PAYMENT_STATES}},
        {"$set": {"status": "succeeded", "paidAt": at, "updatedAt": at}},
        return_document=ReturnDocument.AFTER,
    )
    if payment is not None:
        return "succeeded"
    existing = collection("payment").find_one({"stripePaymentIntentId": intent_id})
    if existing is None:
        logger.info("No payment record yet for intent %s", intent_id)
        return "payment_not_found"
    return f"already_{existing.get('status')}"


def handle_payment_intent_failed(intent: Dict[str, Any]) -> str:
    intent_id = intent.get("id")
    reason = ((intent.get("last_payment_error") or {}).get("message") or "Payment failed")[:500]
    at = now()
    coll = collection("payment")
    payment = coll.find_one_and_update(
        {"stripePaymentIntentId": intent_id, "status": {"$ne": "failed"}},
        {"$set": {"status": "failed", "failedAt": at, "failureReason": reason, "updatedAt": at}},
        return_document=ReturnDocument.AFTER,
    )
    if payment is None:
        payment = coll.find_one({"stripePaymentIntentId": intent_id})
        if payment is None:
            logger.info("No payment record for failed intent %s", intent_id)
            return "payment_not_found"

    selector = order_store.by_id(payment["orderId"])
    patch = {"status": "failed", "failureReason": reason}
    expect = {"payment.status": {"$ne": "failed"}}
    order = order_store.update_payment(selector, patch, expect=expect, status="cancelled", at=at)
    if order is not None:
        logger.info("Order %s cancelled after payment failure: %s", order.get("orderNumber"), reason)
        return "cancelled"
    order = order_store.update_payment(selector, patch, expect=expect, at=at)
    if order is not None:
        logger.warning("Payment failed for order %s, which is already %s; status left unchanged",
                       order.get("orderNumber"), order.get("status"))
        return "payment_failed"
    return "already_failed"


HANDLERS: Dict[str, Callable[[Dict[str, Any]], str]] = {
    "checkout.session.completed": handle_checkout_session_completed,
    "checkout_session.completed": handle_checkout_session_completed,
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
}


def handle_event(raw_payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """
    Verify and apply one webhook delivery.

    Raises InvalidSignature for payloads that fail verification; every other outcome,
    including unknown event types and processing errors, is acknowledged.
    """
    event = payments.construct_event(raw_payload, signature)
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled event type: %s", event_type)
        return {"received": True, "handled": False}
    try:
        outcome = handler(obj)
    except Exception:
        logger.exception("Error handling %s event %s", event_type, event.get("id"))
        return {"received": True, "handled": False}
    logger.info("Processed %s event %s: %s", event_type, event.get("id"), outcome)
    return {"received": True, "handled": True, "outcome": outcome}
