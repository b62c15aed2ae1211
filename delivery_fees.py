"""
Delivery fee lookup by postal code.

Fees are keyed by postal-code prefixes (forward sortation areas and wider regions).
A query is resolved against the most specific key it starts with.
"""
import re
from dataclasses import asdict, dataclass
from typing import Dict, List, Mapping, Optional

MIN_PREFIX_LENGTH = 2

# cents
DELIVERY_FEES: Dict[str, int] = {
    # Downtown / Plateau / Mile End
    "H2X": 800,
    "H2W": 900,
    "H2T": 900,
    "H2J": 1000,
    "H2L": 900,
    "H3A": 800,
    "H3B": 800,
    "H3G": 800,
    "H3H": 900,
    "H3C": 1000,
    # Westmount / NDG / Outremont
    "H3Z": 1100,
    "H3Y": 1100,
    "H4A": 1200,
    "H4B": 1300,
    "H2V": 1000,
    # Island regions
    "H1": 1800,
    "H2": 1300,
    "H3": 1200,
    "H4": 1500,
    "H8": 2200,
    "H9": 2500,
    # Laval and South Shore
    "H7": 2500,
    "J4": 2800,
}


@dataclass(frozen=True)
class FeeQuote:
    postalCode: str
    fee: int
    matchType: str
    matchedPrefix: str

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def normalize(postal_code: str) -> str:
    return re.sub(r"[\s\-]", "", postal_code or "").upper()


def resolve(postal_code: str, table: Optional[Mapping[str, int]] = None) -> Optional[FeeQuote]:
    """Return the fee for the longest matching prefix, or None when nothing matches."""
    fees = DELIVERY_FEES if table is None else table
    code = normalize(postal_code)
    if not code:
        return None
    if code in fees:
        return FeeQuote(code, int(fees[code]), "exact", code)
    for length in range(len(code) - 1, MIN_PREFIX_LENGTH - 1, -1):
        prefix = code[:length]
        if prefix in fees:
            return FeeQuote(code, int(fees[prefix]), "prefix", prefix)
    return None


def is_in_delivery_area(postal_code: str, table: Optional[Mapping[str, int]] = None) -> bool:
    return resolve(postal_code, table) is not None


def all_fees() -> Dict[str, int]:
    return dict(DELIVERY_FEES)


def fee_stats() -> Dict[str, object]:
    values = list(DELIVERY_FEES.values())
    if not values:
        return {"count": 0, "minFee": None, "maxFee": None, "averageFee": None}
    return {
        "count": len(values),
        "minFee": min(values),
        "maxFee": max(values),
        "averageFee": sum(values) // len(values),
    }


def search_prefix(prefix: str) -> List[Dict[str, object]]:
    """Exact key first, then every longer key starting with the prefix."""
    prefix = normalize(prefix)
    exact = [k for k in DELIVERY_FEES if k == prefix]
    partial = sorted(k for k in DELIVERY_FEES if k.startswith(prefix) and k != prefix)
    return [{"postalCode": k, "fee": DELIVERY_FEES[k]} for k in exact + partial]
