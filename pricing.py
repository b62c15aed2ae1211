"""
Authoritative pricing for a cart.

Prices are loaded from the product documents, never taken from the client. All arithmetic
is done on integer cents; the tax rate is converted to Decimal before it touches money.
"""
import logging
from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import delivery_fees
from database import collection, to_object_id
from errors import DeliveryUnavailable, InsufficientStock, ProductUnavailable

logger = logging.getLogger("bloomshop.pricing")

LEGACY_TIER_ORDER = ("standard", "deluxe", "premium")


@dataclass
class PricedLine:
    productId: str
    name: str
    tierName: Optional[str]
    price: int
    quantity: int
    total: int


@dataclass
class PricedCart:
    items: List[PricedLine]
    subtotal: int
    taxAmount: int
    deliveryFee: int
    total: int
    deliveryQuote: Optional[delivery_fees.FeeQuote] = None
    warnings: List[str] = field(default_factory=list)

    def item_dicts(self) -> List[Dict[str, Any]]:
        return [asdict(i) for i in self.items]


def select_variant(product: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """First variant that is active and in stock."""
    for variant in product.get("variants") or []:
        if variant.get("isActive", True) and int(variant.get("stock") or 0) > 0:
            return variant
    return None


def resolve_unit_price(product: Dict[str, Any]) -> Tuple[int, Optional[str]]:
    """
    Return (unit price in cents, tier name of the pricing variant).

    Falls back to the legacy flat prices when no variant can be sold, and to 0 when
    nothing resolves. The tier name is None for legacy prices.
    """
    variant = select_variant(product)
    if variant is not None:
        return int(variant.get("price") or 0), variant.get("tierName")
    legacy = product.get("price") or {}
    if isinstance(legacy, dict):
        for tier in LEGACY_TIER_ORDER:
            value = int(legacy.get(tier) or 0)
            if value > 0:
                return value, None
    return 0, None


def compute_tax(tax_rate: float, taxable: int) -> int:
    """round_half_up(tax_rate * taxable) in whole cents."""
    amount = Decimal(str(tax_rate)) * Decimal(int(taxable))
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _available_stock(product: Dict[str, Any], tier: Optional[str]) -> Optional[int]:
    if tier is not None:
        for variant in product.get("variants") or []:
            if variant.get("tierName") == tier:
                return int(variant.get("stock") or 0)
    legacy_stock = product.get("stock")
    return None if legacy_stock is None else int(legacy_stock)


def _load_product(product_id: str) -> Optional[Dict[str, Any]]:
    oid = to_object_id(product_id)
    if oid is None:
        return None
    return collection("product").find_one({"_id": oid})


def resolve_delivery_fee(shop: Dict[str, Any], method: str, postal_code: Optional[str]) -> Tuple[int, Optional[delivery_fees.FeeQuote]]:
    options = shop.get("deliveryOptions") or {}
    if method == "pickup":
        if options.get("pickup", True) is False:
            raise DeliveryUnavailable(None, "This shop does not offer pickup")
        return 0, None
    if not options.get("delivery", False):
        raise DeliveryUnavailable(postal_code, "This shop does not offer delivery")
    quote = delivery_fees.resolve(postal_code or "")
    if quote is None:
        raise DeliveryUnavailable(postal_code)
    return quote.fee, quote


def price_cart(shop: Dict[str, Any], items: Iterable[Dict[str, Any]], delivery_method: str,
               postal_code: Optional[str] = None,
               load_product: Callable[[str], Optional[Dict[str, Any]]] = _load_product) -> PricedCart:
    shop_id = str(shop["_id"])
    lines: List[PricedLine] = []
    warnings: List[str] = []
    demand: Dict[Tuple[str, Optional[str]], int] = {}

    for item in items:
        product_id = str(item["productId"])
        quantity = int(item["quantity"])
        product = load_product(product_id)
        if not product or not product.get("isActive", True) or str(product.get("shopId")) != shop_id:
            raise ProductUnavailable(product_id)

        unit_price, tier = resolve_unit_price(product)
        if unit_price == 0:
            logger.warning("Product %s (%s) has no resolvable price; charging 0", product_id, product.get("name"))
            warnings.append(f"Product {product_id} has no price")

        key = (product_id, tier)
        demand[key] = demand.get(key, 0) + quantity
        available = _available_stock(product, tier)
        if available is not None and demand[key] > available:
            raise InsufficientStock(product.get("name", product_id), available)

        lines.append(PricedLine(product_id, product.get("name", ""), tier, unit_price, quantity, unit_price * quantity))

    subtotal = sum(line.total for line in lines)
    fee, quote = resolve_delivery_fee(shop, delivery_method, postal_code)
    tax = compute_tax(float(shop.get("taxRate") or 0), subtotal + fee)
    return PricedCart(lines, subtotal, tax, fee, subtotal + tax + fee, quote, warnings)
