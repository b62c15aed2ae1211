"""
Stock decrement policies.

Stock for an order is taken exactly once. Which event takes it depends on deployment:
outside production the gateway cannot reach the webhook endpoint, so stock is taken as
soon as the order is created; in production it is taken when payment is confirmed.
Either way the order-level claim in order_store guarantees a single decrement.
"""
import logging
from typing import Any, Dict, Optional

import order_store
from config import settings
from database import collection, to_object_id

logger = logging.getLogger("bloomshop.inventory")


def decrement_line(product_id: str, tier_name: Optional[str], quantity: int) -> bool:
    """Single atomic $inc for one order line. Returns False if the product or variant is gone."""
    oid = to_object_id(product_id)
    if oid is None:
        return False
    if tier_name:
        result = collection("product").update_one(
            {"_id": oid, "variants.tierName": tier_name},
            {"$inc": {"variants.$.stock": -quantity}},
        )
    else:
        result = collection("product").update_one(
            {"_id": oid, "stock": {"$exists": True, "$ne": None}},
            {"$inc": {"stock": -quantity}},
        )
    return result.matched_count == 1


def decrement_order_stock(order: Dict[str, Any]) -> bool:
    """Take stock for every line of the order, once. Returns True if this call did it."""
    if not order_store.claim_stock_decrement(order["_id"]):
        logger.info("Stock already taken for order %s", order.get("orderNumber"))
        return False
    for item in order.get("items", []):
        if not decrement_line(item["productId"], item.get("tierName"), int(item["quantity"])):
            logger.warning("Could not decrement stock for product %s (tier %s) on order %s",
                           item["productId"], item.get("tierName"), order.get("orderNumber"))
    logger.info("Stock taken for order %s", order.get("orderNumber"))
    return True


class StockDecrementStrategy:
    name = "base"

    def on_order_created(self, order: Dict[str, Any]) -> bool:
        return False

    def on_payment_confirmed(self, order: Dict[str, Any]) -> bool:
        return False


class ImmediateOnOrderCreate(StockDecrementStrategy):
    name = "immediate"

    def on_order_created(self, order: Dict[str, Any]) -> bool:
        return decrement_order_stock(order)


class DeferredOnPaymentConfirmation(StockDecrementStrategy):
    name = "deferred"

    def on_payment_confirmed(self, order: Dict[str, Any]) -> bool:
        return decrement_order_stock(order)


def current_strategy() -> StockDecrementStrategy:
    if settings.is_production:
        return DeferredOnPaymentConfirmation()
    return ImmediateOnOrderCreate()
