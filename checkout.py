"""
Checkout: from a cart to a pending order with an open Stripe session.

Nothing is written until the request is valid, the shop is open and the cart is priced.
From the moment the order is inserted it is never rolled back: a gateway failure after
that point leaves a pending order without a session, which is reported to the caller.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

import pydantic
from pydantic import BaseModel, Field

import fulfillment
import inventory
import order_store
import payments
import pickup
import pricing
from access import Actor
from database import collection, to_object_id
from errors import ShopUnavailable, ValidationError, field_messages
from schemas import DeliveryInfo, Recipient

logger = logging.getLogger("bloomshop.checkout")


class CartLine(BaseModel):
    productId: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1, le=100)


class CheckoutRequest(BaseModel):
    shopId: str = Field(..., min_length=1)
    items: List[CartLine] = Field(..., min_length=1)
    delivery: DeliveryInfo
    recipient: Recipient
    occasion: Optional[str] = None
    cardMessage: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=500)


@dataclass
class CheckoutResult:
    orderId: str
    orderNumber: str
    sessionId: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return {"orderId": self.orderId, "orderNumber": self.orderNumber, "sessionId": self.sessionId, "url": self.url}


def parse_request(data: Union[CheckoutRequest, Dict[str, Any]]) -> CheckoutRequest:
    if isinstance(data, CheckoutRequest):
        return data
    try:
        return CheckoutRequest.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(field_messages(exc.errors()))


def load_active_shop(shop_id: str) -> Dict[str, Any]:
    oid = to_object_id(shop_id)
    shop = collection("shop").find_one({"_id": oid}) if oid else None
    if not shop or not shop.get("isActive", True):
        raise ShopUnavailable(shop_id)
    return shop


def _price_and_create(actor: Actor, req: CheckoutRequest, source: str) -> Dict[str, Any]:
    shop = load_active_shop(req.shopId)
    if req.delivery.method == "pickup" and req.delivery.pickupLocationId:
        pickup.check_for_order(req.delivery.pickupLocationId, str(shop["_id"]))
    postal = req.delivery.address.postalCode if req.delivery.address else None
    priced = pricing.price_cart(shop, [line.model_dump() for line in req.items], req.delivery.method, postal)
    draft = {
        "customerId": actor.id,
        "shopId": str(shop["_id"]),
        "items": priced.item_dicts(),
        "subtotal": priced.subtotal,
        "taxAmount": priced.taxAmount,
        "deliveryFee": priced.deliveryFee,
        "total": priced.total,
        "currency": str(shop.get("currency", "CAD")).lower(),
        "recipient": req.recipient.model_dump(),
        "occasion": req.occasion,
        "cardMessage": req.cardMessage,
        "delivery": req.delivery.model_dump(),
        "notes": req.notes,
        "source": source,
    }
    return order_store.create(draft)


def begin_checkout(actor: Actor, data: Union[CheckoutRequest, Dict[str, Any]],
                   schedule: Optional[Callable[..., Any]] = None) -> CheckoutResult:
    req = parse_request(data)
    order = _price_and_create(actor, req, "checkout")

    inventory.current_strategy().on_order_created(order)

    try:
        session = payments.create_checkout_session(
            order,
            customer_email=req.delivery.contactEmail,
            metadata={"shopId": order["shopId"], "customerId": actor.id},
        )
    except Exception:
        logger.error("Order %s (%s) left pending without a payment session",
                     order["orderNumber"], order["_id"])
        raise

    updated = order_store.update_payment(order_store.by_id(order["_id"]), {"sessionId": session.id})
    fulfillment.dispatch(updated or order, schedule)
    logger.info("Checkout session %s opened for order %s", session.id, order["orderNumber"])
    return CheckoutResult(str(order["_id"]), order["orderNumber"], session.id, session.url)


def create_direct_order(actor: Actor, data: Union[CheckoutRequest, Dict[str, Any]],
                        schedule: Optional[Callable[..., Any]] = None) -> Dict[str, Any]:
    """
    Order without the payment gateway. It stays pending until the shop confirms it, and
    stock is taken right away because no payment webhook will ever arrive for it.
    """
    req = parse_request(data)
    order = _price_and_create(actor, req, "direct")
    inventory.ImmediateOnOrderCreate().on_order_created(order)
    fulfillment.dispatch(order, schedule)
    return order_store.get(order["_id"])
