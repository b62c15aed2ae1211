"""
Persistence and lifecycle of orders.

Pricing fields and item snapshots are written once, at creation. Afterwards only status,
payment.*, notes and the stock bookkeeping flag change, and every such change is a single
conditional find_one_and_update so a concurrent writer can never be silently overwritten.
"""
import logging
import secrets
import string
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import pydantic
from pymongo import ReturnDocument

from database import collection, create_document, now, to_object_id
from errors import InvalidStatusTransition, NotFound, ValidationError, field_messages
from schemas import ORDER_STATUSES, Order, PaymentInfo

logger = logging.getLogger("bloomshop.orders")

COLLECTION = "order"

TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("confirmed", "cancelled"),
    "confirmed": ("preparing", "cancelled"),
    "preparing": ("ready", "cancelled"),
    "ready": ("shipped", "delivered"),
    "shipped": ("delivered",),
    "delivered": (),
    "cancelled": (),
}

_ALPHABET = string.digits + string.ascii_uppercase


def predecessors(status: str) -> List[str]:
    return [src for src, targets in TRANSITIONS.items() if status in targets]


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, ())


def generate_order_number() -> str:
    """Display number, e.g. ORD-482913-7QX2. Uniqueness comes from the document id."""
    stamp = str(int(time.time() * 1000))[-6:]
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(4))
    return f"ORD-{stamp}-{suffix}"


def by_id(order_id: Any) -> Dict[str, Any]:
    oid = to_object_id(order_id)
    if oid is None:
        raise NotFound("Order")
    return {"_id": oid}


def by_session(session_id: str) -> Dict[str, Any]:
    return {"payment.sessionId": session_id}


def create(draft: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and insert a new order in pending/payment pending state."""
    draft = dict(draft)
    draft.setdefault("orderNumber", generate_order_number())
    draft["status"] = "pending"
    draft["payment"] = {"status": "pending"}
    draft["stockDecremented"] = False
    try:
        order = Order(**draft)
    except pydantic.ValidationError as exc:
        raise ValidationError(field_messages(exc.errors()))
    order_id = create_document(COLLECTION, order)
    logger.info("Created order %s (%s) for customer %s, total %s",
                order.orderNumber, order_id, order.customerId, order.total)
    return get(order_id)


def get(order_id: Any) -> Dict[str, Any]:
    order = collection(COLLECTION).find_one(by_id(order_id))
    if not order:
        raise NotFound("Order")
    return order


def get_by_session(session_id: str) -> Optional[Dict[str, Any]]:
    return collection(COLLECTION).find_one(by_session(session_id))


def _status_update(new_status: str, at: datetime) -> Dict[str, Any]:
    return {"status": new_status, f"{new_status}At": at, "updatedAt": at}


def update_status(order_id: Any, new_status: str, at: Optional[datetime] = None) -> Dict[str, Any]:
    """Move an order along the lifecycle. Illegal moves raise InvalidStatusTransition."""
    if new_status not in ORDER_STATUSES:
        raise ValidationError([f"status: must be one of {', '.join(ORDER_STATUSES)}"], "Invalid status")
    selector = by_id(order_id)
    at = at or now()
    updated = collection(COLLECTION).find_one_and_update(
        {**selector, "status": {"$in": predecessors(new_status)}},
        {"$set": _status_update(new_status, at)},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = collection(COLLECTION).find_one(selector, {"status": 1})
        if current is None:
            raise NotFound("Order")
        raise InvalidStatusTransition(current.get("status"), new_status)
    logger.info("Order %s status -> %s", updated.get("orderNumber"), new_status)
    return updated


def update_payment(selector: Dict[str, Any], patch: Dict[str, Any], expect: Optional[Dict[str, Any]] = None,
                   status: Optional[str] = None, at: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """
    Patch the payment sub-document of the order matched by `selector`.

    `expect` adds conditions the stored order must satisfy. When `status` is given the
    order status moves with the payment in the same write, and only from a legal
    predecessor. Returns the updated order, or None when nothing matched.
    """
    unknown = set(patch) - set(PaymentInfo.model_fields)
    if unknown:
        raise ValidationError([f"payment.{k}: unknown field" for k in sorted(unknown)])
    at = at or now()
    query = {**selector, **(expect or {})}
    changes = {f"payment.{k}": v for k, v in patch.items()}
    changes["updatedAt"] = at
    if status is not None:
        if "status" in query:
            raise ValueError("expect may not constrain status when status is being set")
        query["status"] = {"$in": predecessors(status)}
        changes.update(_status_update(status, at))
    return collection(COLLECTION).find_one_and_update(
        query, {"$set": changes}, return_document=ReturnDocument.AFTER,
    )


def claim_stock_decrement(order_id: Any) -> bool:
    """Atomically mark the order's stock as decremented. True only for the first caller."""
    at = now()
    claimed = collection(COLLECTION).find_one_and_update(
        {**by_id(order_id), "stockDecremented": {"$ne": True}},
        {"$set": {"stockDecremented": True, "stockDecrementedAt": at, "updatedAt": at}},
    )
    return claimed is not None


def list_orders(filter_dict: Dict[str, Any], page: int = 1, limit: int = 20,
                sort_by: str = "createdAt", descending: bool = True) -> Tuple[List[Dict[str, Any]], int]:
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    coll = collection(COLLECTION)
    cursor = (coll.find(filter_dict)
              .sort(sort_by, -1 if descending else 1)
              .skip((page - 1) * limit)
              .limit(limit))
    return list(cursor), count(filter_dict)


def count(filter_dict: Optional[Dict[str, Any]] = None) -> int:
    return collection(COLLECTION).count_documents(filter_dict or {})
