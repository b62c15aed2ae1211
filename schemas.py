"""
Bloomshop Database Schemas

Each Pydantic model below represents one MongoDB collection. The collection name is the lowercase
class name. Example: class Order -> collection "order".

These schemas are used for validation before inserting documents. References between
documents (shopId, customerId, productId, orderId) are stored as id strings.
All money fields are integers in minor units (cents).
"""
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

ROLES = ("customer", "shop_owner", "admin")
ORDER_STATUSES = ("pending", "confirmed", "preparing", "ready", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "succeeded", "failed")
CONTACT_STATUSES = ("new", "read", "replied", "archived")
TIERS = ("standard", "deluxe", "premium")

CANADIAN_PROVINCES = {"AB", "BC", "MB", "NB", "NL", "NS", "NT", "NU", "ON", "PE", "QC", "SK", "YT"}
POSTAL_CODE_RE = re.compile(r"^[A-Za-z]\d[A-Za-z][ -]?\d[A-Za-z]\d$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class _Strict(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


class User(_Strict):
    externalId: str = Field(..., description="Subject id issued by the identity provider")
    email: str
    name: str
    role: Literal["customer", "shop_owner", "admin"] = "customer"
    phone: Optional[str] = None
    isActive: bool = True


# Shops

class ShopAddress(_Strict):
    street: str
    city: str
    province: Optional[str] = None
    postalCode: str
    country: str = "Canada"


class DeliveryOptions(BaseModel):
    pickup: bool = True
    delivery: bool = False
    deliveryRadius: int = Field(0, ge=0, description="kilometres")
    deliveryFee: int = Field(0, ge=0, description="flat fee in cents, informational")


class Shop(_Strict):
    name: str = Field(..., min_length=1, max_length=100)
    ownerId: str
    description: Optional[str] = Field(None, max_length=500)
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[ShopAddress] = None
    currency: Literal["USD", "EUR", "GBP", "CAD", "AUD"] = "CAD"
    taxRate: float = Field(0, ge=0, le=1, description="fraction, e.g. 0.14975")
    deliveryOptions: DeliveryOptions = Field(default_factory=DeliveryOptions)
    isActive: bool = True


# Pickup locations

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class DayHours(BaseModel):
    open: str = "09:00"
    close: str = "18:00"
    isOpen: bool = True

    @field_validator("open", "close")
    @classmethod
    def _clock(cls, v: str) -> str:
        if not TIME_RE.match(v):
            raise ValueError("hours must be HH:MM (24-hour)")
        return v

    @model_validator(mode="after")
    def _order(self) -> "DayHours":
        if self.isOpen and self.close <= self.open:
            raise ValueError("close must be after open")
        return self


class BusinessHours(BaseModel):
    monday: DayHours = Field(default_factory=DayHours)
    tuesday: DayHours = Field(default_factory=DayHours)
    wednesday: DayHours = Field(default_factory=DayHours)
    thursday: DayHours = Field(default_factory=DayHours)
    friday: DayHours = Field(default_factory=DayHours)
    saturday: DayHours = Field(default_factory=lambda: DayHours(close="17:00"))
    sunday: DayHours = Field(default_factory=lambda: DayHours(open="10:00", close="16:00", isOpen=False))


class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2, description="[longitude, latitude]")

    @field_validator("coordinates")
    @classmethod
    def _range(cls, v: List[float]) -> List[float]:
        lng, lat = v
        if not (-180 <= lng <= 180 and -90 <= lat <= 90):
            raise ValueError("coordinates must be [longitude, latitude]")
        return v


class PickupSettings(BaseModel):
    minNoticeHours: int = Field(2, ge=0)
    maxAdvanceDays: int = Field(30, ge=1)
    timeSlotInterval: int = Field(30, ge=15, description="minutes")
    isActive: bool = True


class PickupLocation(_Strict):
    name: str = Field(..., min_length=1, max_length=100)
    shopId: str
    address: ShopAddress
    location: GeoPoint
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    businessHours: BusinessHours = Field(default_factory=BusinessHours)
    settings: PickupSettings = Field(default_factory=PickupSettings)
    description: Optional[str] = Field(None, max_length=500)
    pickupInstructions: Optional[str] = Field(None, max_length=1000)


# Products

class ProductImage(BaseModel):
    size: Literal["small", "medium", "large", "xlarge"] = "medium"
    url: str
    publicId: Optional[str] = None
    alt: str = ""
    isPrimary: bool = False


class ProductVariant(_Strict):
    tierName: Literal["standard", "deluxe", "premium"]
    price: int = Field(0, ge=0)
    stock: int = Field(0, ge=0)
    images: List[ProductImage] = Field(default_factory=list)
    isActive: bool = True


class LegacyPrice(BaseModel):
    """Flat tier prices kept for products created before variants existed."""
    standard: int = Field(0, ge=0)
    deluxe: int = Field(0, ge=0)
    premium: int = Field(0, ge=0)


class Product(_Strict):
    shopId: str
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=1000)
    color: str = Field("", max_length=50)
    variants: List[ProductVariant] = Field(default_factory=list)
    price: LegacyPrice = Field(default_factory=LegacyPrice)
    stock: Optional[int] = Field(None, ge=0, description="legacy stock used when no variant prices the product")
    tags: List[str] = Field(default_factory=list)
    productTypes: List[str] = Field(default_factory=list)
    occasions: List[str] = Field(default_factory=list)
    images: List[ProductImage] = Field(default_factory=list)
    isActive: bool = True
    isFeatured: bool = False
    isBestSeller: bool = False
    sortOrder: int = 0


# Orders

class OrderItem(BaseModel):
    productId: str
    name: str
    tierName: Optional[str] = None
    price: int = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    total: int = Field(..., ge=0)


class Recipient(_Strict):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: EmailStr


class DeliveryAddress(_Strict):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    province: str
    postalCode: str
    country: str = "Canada"
    company: Optional[str] = None

    @field_validator("province")
    @classmethod
    def _province(cls, v: str) -> str:
        v = v.upper()
        if v not in CANADIAN_PROVINCES:
            raise ValueError("province must be a Canadian province or territory code")
        return v

    @field_validator("postalCode")
    @classmethod
    def _postal(cls, v: str) -> str:
        if not POSTAL_CODE_RE.match(v):
            raise ValueError("postal code must look like 'H2X 2B2'")
        v = re.sub(r"[\s-]", "", v).upper()
        return f"{v[:3]} {v[3:]}"


class DeliveryInfo(_Strict):
    method: Literal["pickup", "delivery"]
    date: str = Field(..., description="YYYY-MM-DD")
    time: str = Field(..., description="24-hour HH:MM")
    address: Optional[DeliveryAddress] = None
    instructions: Optional[str] = Field(None, max_length=500)
    contactPhone: str = Field(..., min_length=1)
    contactEmail: EmailStr
    pickupLocationId: Optional[str] = None

    @field_validator("date")
    @classmethod
    def _date(cls, v: str) -> str:
        if not DATE_RE.match(v):
            raise ValueError("date must be YYYY-MM-DD")
        try:
            return date.fromisoformat(v).isoformat()
        except ValueError:
            raise ValueError("date must be a valid calendar date")

    @field_validator("time")
    @classmethod
    def _time(cls, v: str) -> str:
        if not TIME_RE.match(v):
            raise ValueError("time must be HH:MM (24-hour)")
        return v

    @model_validator(mode="after")
    def _method_fields(self) -> "DeliveryInfo":
        if self.method == "delivery" and self.address is None:
            raise ValueError("address is required for delivery")
        scheduled = datetime.strptime(f"{self.date} {self.time}", "%Y-%m-%d %H:%M").replace(tzinfo=timezone.utc)
        if scheduled <= datetime.now(timezone.utc):
            raise ValueError("delivery date must be in the future")
        return self


class PaymentInfo(BaseModel):
    sessionId: Optional[str] = None
    intentId: Optional[str] = None
    status: Literal["pending", "succeeded", "failed"] = "pending"
    paidAt: Optional[datetime] = None
    failureReason: Optional[str] = None


class Order(BaseModel):
    customerId: str
    shopId: str
    orderNumber: str
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: int = Field(..., ge=0)
    taxAmount: int = Field(..., ge=0)
    deliveryFee: int = Field(0, ge=0)
    total: int = Field(..., ge=0)
    currency: str = "cad"
    recipient: Recipient
    occasion: Optional[str] = None
    cardMessage: Optional[str] = Field(None, max_length=500)
    delivery: DeliveryInfo
    notes: Optional[str] = Field(None, max_length=500)
    status: Literal["pending", "confirmed", "preparing", "ready", "shipped", "delivered", "cancelled"] = "pending"
    payment: PaymentInfo = Field(default_factory=PaymentInfo)
    source: Literal["checkout", "direct"] = "checkout"
    stockDecremented: bool = False

    @model_validator(mode="after")
    def _totals(self) -> "Order":
        if self.total != self.subtotal + self.taxAmount + self.deliveryFee:
            raise ValueError("total must equal subtotal + taxAmount + deliveryFee")
        if self.subtotal != sum(i.total for i in self.items):
            raise ValueError("subtotal must equal the sum of line totals")
        return self


class Payment(BaseModel):
    """Audit record of a gateway payment. Created once per payment intent."""
    stripePaymentIntentId: Optional[str] = None
    stripeSessionId: str
    orderId: str
    customerId: str
    amount: int = Field(..., ge=0)
    currency: str = "cad"
    status: Literal["pending", "processing", "succeeded", "failed", "cancelled", "requires_action"] = "pending"
    paidAt: Optional[datetime] = None
    failedAt: Optional[datetime] = None
    failureReason: Optional[str] = Field(None, max_length=500)
    stripeCustomerId: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Contact(_Strict):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    subject: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1, max_length=5000)
    shopId: str
    status: Literal["new", "read", "replied", "archived"] = "new"
