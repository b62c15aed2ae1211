"""Exceptions raised by the order pipeline and rendered by the API layer."""
from typing import List, Optional


class ShopError(Exception):
    """Base exception. `status_code` is the HTTP status the API answers with."""

    status_code = 500

    def __init__(self, message: str, details: Optional[List[str]] = None):
        self.message = message
        self.details = details or []
        super().__init__(message)


class ValidationError(ShopError):
    """Client input is malformed or missing. Raised before any write."""

    status_code = 400

    def __init__(self, details: List[str], message: str = "Validation failed"):
        super().__init__(message, details)


class Unauthorized(ShopError):
    status_code = 401


class Forbidden(ShopError):
    status_code = 403


class NotFound(ShopError):
    """The id does not resolve, or resolves to something the caller may not see."""

    status_code = 404

    def __init__(self, resource: str = "Resource"):
        self.resource = resource
        super().__init__(f"{resource} not found")


class InvalidStatusTransition(ShopError):
    status_code = 400

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change status from '{current}' to '{requested}'")


class ShopUnavailable(ShopError):
    status_code = 400

    def __init__(self, shop_id: str):
        self.shop_id = shop_id
        super().__init__("Shop not found or inactive")


class ProductUnavailable(ShopError):
    status_code = 400

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found or not available from this shop")


class InsufficientStock(ShopError):
    status_code = 400

    def __init__(self, name: str, available: int):
        self.available = available
        super().__init__(f"Insufficient stock for {name}. Available: {available}")


class DeliveryUnavailable(ShopError):
    status_code = 400

    def __init__(self, postal_code: Optional[str], reason: str = "Delivery is not available for this postal code"):
        self.postal_code = postal_code
        super().__init__(reason)


class InvalidSignature(ShopError):
    status_code = 400


class UpstreamError(ShopError):
    """Payment gateway or print service failed or timed out. Safe to retry."""

    status_code = 502


class ServiceUnavailable(ShopError):
    """The database did not answer within its timeout. Safe to retry."""

    status_code = 503


def field_messages(errors: List[dict]) -> List[str]:
    """Flatten pydantic error dicts into "<field.path>: <message>" strings."""
    messages = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        msg = err.get("msg", "invalid value")
        messages.append(f"{'.'.join(loc)}: {msg}" if loc else msg)
    return messages
