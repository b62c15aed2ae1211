"""
Authentication and the access policy for orders, shops, products, contacts and users.

Tokens are issued by the external identity provider and verified here with the shared
HS256 secret. Every route asks `require(actor, action, resource)` before it reads or
writes; resources the caller may not see are reported exactly like missing ones.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
from fastapi import Header
from pymongo import ReturnDocument

from config import settings
from database import collection, now
from errors import Forbidden, NotFound, Unauthorized

logger = logging.getLogger("bloomshop.access")

CUSTOMER = "customer"
SHOP_OWNER = "shop_owner"
ADMIN = "admin"

# action -> roles that may attempt it at all
ROLE_ACTIONS = {
    "order:create": {CUSTOMER},
    "order:read": {CUSTOMER, SHOP_OWNER, ADMIN},
    "order:list_shop": {SHOP_OWNER, ADMIN},
    "order:update_status": {SHOP_OWNER, ADMIN},
    "order:update_payment": {SHOP_OWNER, ADMIN},
    "order:print": {SHOP_OWNER, ADMIN},
    "checkout:create": {CUSTOMER},
    "product:create": {SHOP_OWNER, ADMIN},
    "product:update": {SHOP_OWNER, ADMIN},
    "product:delete": {SHOP_OWNER, ADMIN},
    "product:stock": {SHOP_OWNER, ADMIN},
    "pickup:create": {SHOP_OWNER, ADMIN},
    "pickup:update": {SHOP_OWNER, ADMIN},
    "pickup:delete": {SHOP_OWNER, ADMIN},
    "contact:read": {SHOP_OWNER, ADMIN},
    "contact:update": {SHOP_OWNER, ADMIN},
    "shop:create": {ADMIN},
    "shop:update": {SHOP_OWNER, ADMIN},
    "shop:delete": {SHOP_OWNER, ADMIN},
    "user:list": {ADMIN},
    "user:update_role": {ADMIN},
    "user:deactivate": {ADMIN},
}

SELF_LOCKOUT_ACTIONS = {"user:update_role", "user:deactivate"}


class Actor:
    def __init__(self, user: Dict[str, Any]):
        self.user = user
        self.id = str(user["_id"])
        self.role = user.get("role", CUSTOMER)
        self.email = user.get("email")
        self._shop_loaded = False
        self._shop: Optional[Dict[str, Any]] = None

    @property
    def owned_shop(self) -> Optional[Dict[str, Any]]:
        """The caller's active shop; looked up at most once per request."""
        if not self._shop_loaded:
            self._shop = collection("shop").find_one({"ownerId": self.id, "isActive": True})
            self._shop_loaded = True
        return self._shop

    @property
    def owned_shop_id(self) -> Optional[str]:
        shop = self.owned_shop
        return str(shop["_id"]) if shop else None


@dataclass
class Decision:
    allowed: bool
    reason: str = ""
    status_code: int = 200

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def _resource_shop_id(action: str, resource: Dict[str, Any]) -> Optional[str]:
    if action.startswith("shop:"):
        return str(resource["_id"]) if "_id" in resource else None
    shop_id = resource.get("shopId")
    return str(shop_id) if shop_id is not None else None


def authorize(actor: Actor, action: str, resource: Optional[Dict[str, Any]] = None) -> Decision:
    roles = ROLE_ACTIONS.get(action)
    if roles is None:
        return Decision(False, f"Unknown action {action}", 403)
    if actor.role not in roles:
        return Decision(False, "Insufficient permissions", 403)
    if action in SELF_LOCKOUT_ACTIONS and resource is not None and str(resource.get("_id")) == actor.id:
        return Decision(False, "Administrators cannot change or deactivate their own account", 403)
    if actor.role == ADMIN or resource is None:
        return ALLOW

    if actor.role == CUSTOMER:
        if str(resource.get("customerId")) == actor.id:
            return ALLOW
        return Decision(False, "Not visible to this customer", 404)

    # shop_owner
    if action.startswith("shop:"):
        if str(resource.get("ownerId")) == actor.id:
            return ALLOW
        return Decision(False, "Shop not owned by user", 404)
    owned = actor.owned_shop_id
    if owned is not None and _resource_shop_id(action, resource) == owned:
        return ALLOW
    return Decision(False, "Resource belongs to another shop", 404)


def require(actor: Actor, action: str, resource: Optional[Dict[str, Any]] = None, name: str = "Resource") -> None:
    decision = authorize(actor, action, resource)
    if decision:
        return
    logger.info("Denied %s on %s for user %s (%s): %s", action, name, actor.id, actor.role, decision.reason)
    if decision.status_code == 404:
        raise NotFound(name)
    raise Forbidden(decision.reason)


def order_scope(actor: Actor) -> Dict[str, Any]:
    """Mongo filter limiting an order listing to what the caller may see."""
    if actor.role == ADMIN:
        return {}
    if actor.role == SHOP_OWNER:
        return {"shopId": actor.owned_shop_id or "__no_shop__"}
    return {"customerId": actor.id}


def shop_scope(actor: Actor) -> Dict[str, Any]:
    """Filter for shop-owned collections (products, contacts) in management views."""
    if actor.role == ADMIN:
        return {}
    return {"shopId": actor.owned_shop_id or "__no_shop__"}


def decode_token(token: str) -> Dict[str, Any]:
    options = {"verify_aud": bool(settings.jwt_audience)}
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"],
                          audience=settings.jwt_audience or None, options=options)
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid or expired token")


def user_for_claims(claims: Dict[str, Any]) -> Dict[str, Any]:
    """Fetch the local user for a token subject, creating it as a customer on first sight."""
    subject = claims.get("sub")
    if not subject:
        raise Unauthorized("Invalid token - no subject")
    email = (claims.get("email") or "").lower()
    name = (claims.get("user_metadata") or {}).get("full_name") or claims.get("name") or email.split("@")[0] or "User"
    stamp = now()
    user = collection("user").find_one_and_update(
        {"externalId": subject},
        {"$setOnInsert": {"email": email, "name": name, "role": CUSTOMER, "isActive": True,
                          "createdAt": stamp, "updatedAt": stamp}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return user


async def get_current_user(authorization: Optional[str] = Header(default=None)) -> Actor:
    if not authorization:
        raise Unauthorized("Access token required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthorized("Invalid authorization header")
    user = user_for_claims(decode_token(token))
    if not user.get("isActive", True):
        raise Forbidden("Account deactivated")
    return Actor(user)
