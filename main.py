import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import pydantic
from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import AutoReconnect, ExecutionTimeout, NetworkTimeout, PyMongoError, ServerSelectionTimeoutError

import checkout
import delivery_fees
import fulfillment
import order_store
import payments
import pickup
import webhooks
from access import Actor, get_current_user, order_scope, require, shop_scope
from config import settings
from database import collection, create_document, get_db, now, serialize, to_object_id
from errors import InvalidStatusTransition, NotFound, ShopError, ValidationError, field_messages
from schemas import (CONTACT_STATUSES, ROLES, BusinessHours, Contact, DeliveryOptions, GeoPoint, LegacyPrice,
                     PickupLocation, PickupSettings, Product, ProductImage, ProductVariant, Shop, ShopAddress)

# Logging
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("bloomshop")

app = FastAPI(title="Bloomshop API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

DB_TIMEOUTS = (ServerSelectionTimeoutError, NetworkTimeout, ExecutionTimeout, AutoReconnect)


# Error handlers
@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.message, exc.details)
    content: Dict[str, Any] = {"error": exc.message}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Validation failed", "details": field_messages(exc.errors())})


@app.exception_handler(pydantic.ValidationError)
async def model_validation_handler(request: Request, exc: pydantic.ValidationError):
    return JSONResponse(status_code=400, content={"error": "Validation failed", "details": field_messages(exc.errors())})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    if isinstance(exc, DB_TIMEOUTS):
        logger.error("Database timeout on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"error": "Service temporarily unavailable, please retry"})
    logger.exception("Database error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    content = {"error": "Internal server error"}
    if not settings.is_production:
        content["details"] = [str(exc)]
    return JSONResponse(status_code=500, content=content)


@app.on_event("startup")
def ensure_indexes():
    try:
        db = get_db()
        db["order"].create_index("payment.sessionId")
        db["order"].create_index([("customerId", 1), ("createdAt", -1)])
        db["order"].create_index([("shopId", 1), ("status", 1)])
        db["payment"].create_index("stripePaymentIntentId", unique=True,
                                   partialFilterExpression={"stripePaymentIntentId": {"$type": "string"}})
        db["pickuplocation"].create_index([("shopId", 1), ("settings.isActive", 1)])
        db["product"].create_index([("shopId", 1), ("isActive", 1)])
        db["user"].create_index("externalId", unique=True)
        db["shop"].create_index("ownerId")
    except PyMongoError as exc:
        logger.warning("Could not ensure indexes: %s", exc)


def page_of(items: List[Dict[str, Any]], total: int, page: int, limit: int) -> Dict[str, Any]:
    return {"items": serialize(items), "total": total, "page": page, "limit": limit}


def paginate(coll: str, query: Dict[str, Any], page: int, limit: int, sort: List) -> Dict[str, Any]:
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    cursor = collection(coll).find(query).sort(sort).skip((page - 1) * limit).limit(limit)
    return page_of(list(cursor), collection(coll).count_documents(query), page, limit)


def load(coll: str, doc_id: str, name: str) -> Dict[str, Any]:
    oid = to_object_id(doc_id)
    doc = collection(coll).find_one({"_id": oid}) if oid else None
    if not doc:
        raise NotFound(name)
    return doc


# Health
@app.get("/")
def root():
    return {"name": "Bloomshop API", "status": "ok"}


@app.get("/api/health")
def health():
    return {"status": "ok", "environment": settings.app_env}


# Delivery
class FeeRequest(BaseModel):
    postalCode: str = Field(..., min_length=1)


@app.post("/api/delivery/calculate-fee")
def calculate_fee(data: FeeRequest):
    quote = delivery_fees.resolve(data.postalCode)
    if quote is None:
        return JSONResponse(status_code=404, content={
            "error": "Delivery is not available for this postal code",
            "postalCode": delivery_fees.normalize(data.postalCode),
            "fee": None,
        })
    return quote.to_dict()


@app.get("/api/delivery/check-area/{postal_code}")
def check_area(postal_code: str):
    quote = delivery_fees.resolve(postal_code)
    return {
        "postalCode": delivery_fees.normalize(postal_code),
        "inDeliveryArea": quote is not None,
        "fee": quote.fee if quote else None,
        "matchType": quote.matchType if quote else None,
    }


@app.get("/api/delivery/fees")
def list_fees():
    fees = delivery_fees.all_fees()
    return {"fees": fees, "count": len(fees)}


@app.get("/api/delivery/stats")
def delivery_stats():
    return delivery_fees.fee_stats()


@app.get("/api/delivery/search/{prefix}")
def search_fees(prefix: str):
    if len(delivery_fees.normalize(prefix)) < 2:
        raise ValidationError(["prefix: must be at least 2 characters long"])
    results = delivery_fees.search_prefix(prefix)
    return {"prefix": delivery_fees.normalize(prefix), "results": results, "count": len(results)}


# Products
class ProductDTO(BaseModel):
    shopId: Optional[str] = None
    name: str
    description: str = ""
    color: str = ""
    variants: List[ProductVariant] = []
    price: LegacyPrice = LegacyPrice()
    stock: Optional[int] = Field(None, ge=0)
    tags: List[str] = []
    productTypes: List[str] = []
    occasions: List[str] = []
    images: List[ProductImage] = []
    isFeatured: bool = False
    isBestSeller: bool = False
    sortOrder: int = 0


class ProductUpdateDTO(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    variants: Optional[List[ProductVariant]] = None
    price: Optional[LegacyPrice] = None
    stock: Optional[int] = Field(None, ge=0)
    tags: Optional[List[str]] = None
    productTypes: Optional[List[str]] = None
    occasions: Optional[List[str]] = None
    images: Optional[List[ProductImage]] = None
    isActive: Optional[bool] = None
    isFeatured: Optional[bool] = None
    isBestSeller: Optional[bool] = None
    sortOrder: Optional[int] = None


class StockDTO(BaseModel):
    stock: int = Field(..., ge=0)
    tierName: Optional[str] = None


def _csv(value: Optional[str]) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


@app.get("/api/products/shop/{shop_id}")
def list_shop_products(shop_id: str, productTypes: Optional[str] = None, occasions: Optional[str] = None,
                       color: Optional[str] = None, minPrice: Optional[int] = None, maxPrice: Optional[int] = None,
                       bestSeller: Optional[bool] = None, inStock: Optional[bool] = None,
                       page: int = 1, limit: int = 20):
    shop = load("shop", shop_id, "Shop")
    if not shop.get("isActive", True):
        raise NotFound("Shop")
    clauses: List[Dict[str, Any]] = [{"shopId": str(shop["_id"])}, {"isActive": True}]
    if _csv(productTypes):
        clauses.append({"productTypes": {"$in": _csv(productTypes)}})
    if _csv(occasions):
        clauses.append({"occasions": {"$in": _csv(occasions)}})
    if _csv(color):
        clauses.append({"color": {"$in": _csv(color)}})
    if minPrice is not None or maxPrice is not None:
        bounds: Dict[str, int] = {}
        if minPrice is not None:
            bounds["$gte"] = minPrice
        if maxPrice is not None:
            bounds["$lte"] = maxPrice
        clauses.append({"$or": [
            {"variants": {"$elemMatch": {"isActive": True, "price": bounds}}},
            {"price.standard": bounds},
        ]})
    if bestSeller is not None:
        clauses.append({"isBestSeller": bestSeller})
    if inStock is not None:
        sellable = {"variants": {"$elemMatch": {"isActive": True, "stock": {"$gt": 0}}}}
        clauses.append(sellable if inStock else {"$nor": [sellable]})
    return paginate("product", {"$and": clauses}, page, limit, [("sortOrder", 1), ("createdAt", -1)])


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    product = load("product", product_id, "Product")
    shop = collection("shop").find_one({"_id": to_object_id(product.get("shopId"))})
    if not product.get("isActive", True) or not shop or not shop.get("isActive", True):
        raise NotFound("Product")
    return serialize(product)


@app.post("/api/products", status_code=201)
def create_product(data: ProductDTO, actor: Actor = Depends(get_current_user)):
    require(actor, "product:create")
    if actor.role == "admin":
        if not data.shopId:
            raise ValidationError(["shopId: required when an administrator creates a product"])
        shop_id = data.shopId
    else:
        if not actor.owned_shop_id:
            raise ValidationError(["shopId: you must own an active shop to create products"])
        shop_id = actor.owned_shop_id
    shop = load("shop", shop_id, "Shop")
    if not shop.get("isActive", True):
        raise ValidationError(["shopId: invalid or inactive shop"])
    require(actor, "product:create", {"shopId": shop_id}, "Shop")
    if not data.variants and not any(data.price.model_dump().values()):
        raise ValidationError(["variants: at least one variant or a legacy price is required"])

    product = Product(**(data.model_dump() | {"shopId": str(shop["_id"])}))
    product_id = create_document("product", product)
    logger.info("Product %s created in shop %s by %s", product_id, shop_id, actor.id)
    return serialize(collection("product").find_one({"_id": to_object_id(product_id)}))


@app.put("/api/products/{product_id}")
def update_product(product_id: str, data: ProductUpdateDTO, actor: Actor = Depends(get_current_user)):
    product = load("product", product_id, "Product")
    require(actor, "product:update", product, "Product")
    changes = data.model_dump(exclude_unset=True)
    merged = {k: v for k, v in product.items() if k in Product.model_fields} | changes
    changes = Product(**merged).model_dump(include=set(changes))
    changes["updatedAt"] = now()
    updated = collection("product").find_one_and_update(
        {"_id": product["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER,
    )
    return serialize(updated)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, actor: Actor = Depends(get_current_user)):
    product = load("product", product_id, "Product")
    require(actor, "product:delete", product, "Product")
    updated = collection("product").find_one_and_update(
        {"_id": product["_id"]}, {"$set": {"isActive": False, "updatedAt": now()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"id": product_id, "deactivated": True, "product": serialize(updated)}


@app.patch("/api/products/{product_id}/stock")
def update_stock(product_id: str, data: StockDTO, actor: Actor = Depends(get_current_user)):
    product = load("product", product_id, "Product")
    require(actor, "product:stock", product, "Product")
    if data.tierName:
        query = {"_id": product["_id"], "variants.tierName": data.tierName}
        change = {"variants.$.stock": data.stock, "updatedAt": now()}
    else:
        query = {"_id": product["_id"]}
        change = {"stock": data.stock, "updatedAt": now()}
    updated = collection("product").find_one_and_update(query, {"$set": change}, return_document=ReturnDocument.AFTER)
    if updated is None:
        raise ValidationError([f"tierName: product has no '{data.tierName}' variant"])
    return serialize(updated)


# Orders
class OrderStatusDTO(BaseModel):
    status: str


class PaymentStatusDTO(BaseModel):
    status: Literal["succeeded", "failed"]
    failureReason: Optional[str] = Field(None, max_length=500)


def _date_range(start: Optional[str], end: Optional[str]) -> Dict[str, Any]:
    bounds: Dict[str, Any] = {}
    try:
        if start:
            bounds["$gte"] = datetime.fromisoformat(start)
        if end:
            bounds["$lte"] = datetime.fromisoformat(end)
    except ValueError:
        raise ValidationError(["startDate/endDate: must be ISO dates"])
    return {"createdAt": bounds} if bounds else {}


def _scoped(scope: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    if scope and extra:
        return {"$and": [scope, extra]}
    return scope or extra


@app.get("/api/orders")
def list_orders(status: Optional[str] = None, shopId: Optional[str] = None, startDate: Optional[str] = None,
                endDate: Optional[str] = None, sortBy: str = "createdAt", sortOrder: str = "desc",
                page: int = 1, limit: int = 20, actor: Actor = Depends(get_current_user)):
    require(actor, "order:read")
    extra: Dict[str, Any] = _date_range(startDate, endDate)
    if status:
        extra["status"] = status
    if shopId:
        extra["shopId"] = shopId
    orders, total = order_store.list_orders(_scoped(order_scope(actor), extra), page, limit,
                                            sortBy, sortOrder != "asc")
    return page_of(orders, total, max(page, 1), limit)


@app.get("/api/orders/shop/{shop_id}")
def list_shop_orders(shop_id: str, status: Optional[str] = None, startDate: Optional[str] = None,
                     endDate: Optional[str] = None, page: int = 1, limit: int = 20,
                     actor: Actor = Depends(get_current_user)):
    require(actor, "order:list_shop", {"shopId": shop_id}, "Shop")
    query: Dict[str, Any] = {"shopId": shop_id, **_date_range(startDate, endDate)}
    if status:
        query["status"] = status
    orders, total = order_store.list_orders(query, page, limit)
    return page_of(orders, total, max(page, 1), limit)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, actor: Actor = Depends(get_current_user)):
    order = order_store.get(order_id)
    require(actor, "order:read", order, "Order")
    return serialize(order)


@app.post("/api/orders", status_code=201)
def create_order(data: checkout.CheckoutRequest, background_tasks: BackgroundTasks,
                 actor: Actor = Depends(get_current_user)):
    require(actor, "order:create")
    order = checkout.create_direct_order(actor, data, background_tasks.add_task)
    return serialize(order)


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, data: OrderStatusDTO, actor: Actor = Depends(get_current_user)):
    order = order_store.get(order_id)
    require(actor, "order:update_status", order, "Order")
    updated = order_store.update_status(order_id, data.status)
    logger.info("Order %s moved to %s by %s (%s)", updated.get("orderNumber"), data.status, actor.id, actor.role)
    return serialize(updated)


@app.put("/api/orders/{order_id}/payment")
def update_order_payment(order_id: str, data: PaymentStatusDTO, actor: Actor = Depends(get_current_user)):
    """Record the outcome of an offline payment on a direct order."""
    order = order_store.get(order_id)
    require(actor, "order:update_payment", order, "Order")
    if order.get("source") != "direct":
        raise ValidationError(["source: payment of checkout orders is set by the payment gateway"],
                              "Payment is managed by the gateway")
    if data.status == "succeeded":
        patch = {"status": "succeeded", "paidAt": now()}
    else:
        patch = {"status": "failed", "failureReason": data.failureReason or "Payment failed"}
    updated = order_store.update_payment(order_store.by_id(order_id), patch,
                                         expect={"payment.status": "pending", "source": "direct"})
    if updated is None:
        current = order_store.get(order_id)
        raise ValidationError([f"payment.status: cannot change from {current['payment'].get('status')} "
                               f"to {data.status}"], "Invalid payment transition")
    logger.info("Order %s payment marked %s by %s (%s)", updated.get("orderNumber"), data.status, actor.id, actor.role)
    return serialize(updated)


@app.post("/api/orders/{order_id}/print", status_code=202)
def print_order(order_id: str, background_tasks: BackgroundTasks, actor: Actor = Depends(get_current_user)):
    order = order_store.get(order_id)
    require(actor, "order:print", order, "Order")
    fulfillment.dispatch(order, background_tasks.add_task)
    return {"queued": True, "orderId": order_id}


# Stripe
@app.post("/api/stripe/create-checkout-session")
def create_checkout_session(data: checkout.CheckoutRequest, background_tasks: BackgroundTasks,
                            actor: Actor = Depends(get_current_user)):
    require(actor, "checkout:create")
    result = checkout.begin_checkout(actor, data, background_tasks.add_task)
    return result.to_dict()


@app.get("/api/stripe/checkout-session/{session_id}")
def get_checkout_session(session_id: str, actor: Actor = Depends(get_current_user)):
    order = order_store.get_by_session(session_id)
    if not order:
        raise NotFound("Order")
    require(actor, "order:read", order, "Order")
    session = payments.retrieve_checkout_session(session_id)
    return {
        "session": {
            "id": session.id,
            "status": getattr(session, "status", None),
            "payment_status": getattr(session, "payment_status", None),
            "amount_total": getattr(session, "amount_total", None),
            "currency": getattr(session, "currency", None),
            "customer_email": getattr(session, "customer_email", None),
        },
        "order": {
            "id": str(order["_id"]),
            "orderNumber": order["orderNumber"],
            "status": order["status"],
            "paymentStatus": order["payment"]["status"],
            "total": order["total"],
        },
    }


@app.post("/api/stripe/webhook")
async def stripe_webhook(request: Request):
    payload = await request.body()
    return webhooks.handle_event(payload, request.headers.get("Stripe-Signature"))


# Contact
class ContactDTO(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    subject: str
    message: str
    shopId: str


class ContactStatusDTO(BaseModel):
    status: str


CONTACT_TRANSITIONS = {
    "new": ("read", "archived"),
    "read": ("replied", "archived"),
    "replied": ("archived",),
    "archived": (),
}


@app.post("/api/contact", status_code=201)
def submit_contact(data: ContactDTO):
    shop = load("shop", data.shopId, "Shop")
    if not shop.get("isActive", True):
        raise NotFound("Shop")
    contact_id = create_document("contact", Contact(**data.model_dump()))
    return serialize(collection("contact").find_one({"_id": to_object_id(contact_id)}))


@app.get("/api/contact")
def list_contacts(status: Optional[str] = None, page: int = 1, limit: int = 20,
                  actor: Actor = Depends(get_current_user)):
    require(actor, "contact:read")
    if actor.role == "shop_owner" and not actor.owned_shop_id:
        raise NotFound("Shop")
    query = dict(shop_scope(actor))
    if status:
        query["status"] = status
    return paginate("contact", query, page, limit, [("createdAt", -1)])


@app.patch("/api/contact/{contact_id}/status")
def update_contact_status(contact_id: str, data: ContactStatusDTO, actor: Actor = Depends(get_current_user)):
    if data.status not in CONTACT_STATUSES:
        raise ValidationError([f"status: must be one of {', '.join(CONTACT_STATUSES)}"], "Invalid status")
    contact = load("contact", contact_id, "Contact")
    require(actor, "contact:update", contact, "Contact")
    sources = [s for s, targets in CONTACT_TRANSITIONS.items() if data.status in targets]
    stamp = now()
    updated = collection("contact").find_one_and_update(
        {"_id": contact["_id"], "status": {"$in": sources}},
        {"$set": {"status": data.status, f"{data.status}At": stamp, "readBy": actor.id, "updatedAt": stamp}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = collection("contact").find_one({"_id": contact["_id"]}, {"status": 1})
        raise InvalidStatusTransition(current.get("status"), data.status)
    return serialize(updated)


# Pickup locations
class PickupLocationUpdateDTO(BaseModel):
    name: Optional[str] = None
    address: Optional[ShopAddress] = None
    location: Optional[GeoPoint] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    businessHours: Optional[BusinessHours] = None
    settings: Optional[PickupSettings] = None
    description: Optional[str] = None
    pickupInstructions: Optional[str] = None


@app.get("/api/pickup-locations")
def list_pickup_locations(shopId: Optional[str] = None, city: Optional[str] = None, isActive: bool = True):
    query: Dict[str, Any] = {"settings.isActive": isActive}
    if shopId:
        query["shopId"] = shopId
    if city:
        query["address.city"] = {"$regex": re.escape(city), "$options": "i"}
    locations = list(collection(pickup.COLLECTION).find(query).sort("name", 1))
    return {"items": serialize(locations), "count": len(locations)}


@app.get("/api/pickup-locations/{location_id}")
def get_pickup_location(location_id: str):
    return serialize(load(pickup.COLLECTION, location_id, "Pickup location"))


@app.get("/api/pickup-locations/{location_id}/time-slots")
def pickup_time_slots(location_id: str, date: Optional[str] = None):
    if not date:
        raise ValidationError(["date: query parameter is required"], "Date parameter is required")
    try:
        day = datetime.strptime(date, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(["date: must be YYYY-MM-DD"])
    location = load(pickup.COLLECTION, location_id, "Pickup location")
    return {"pickupLocationId": location_id, "date": day.isoformat(), "timeSlots": pickup.time_slots(location, day)}


@app.get("/api/pickup-locations/{location_id}/availability")
def pickup_availability(location_id: str):
    location = load(pickup.COLLECTION, location_id, "Pickup location")
    return serialize(pickup.availability(location))


@app.post("/api/pickup-locations", status_code=201)
def create_pickup_location(data: PickupLocation, actor: Actor = Depends(get_current_user)):
    require(actor, "pickup:create", {"shopId": data.shopId}, "Shop")
    shop = load("shop", data.shopId, "Shop")
    if not shop.get("isActive", True):
        raise ValidationError(["shopId: invalid or inactive shop"])
    location_id = create_document(pickup.COLLECTION, data)
    logger.info("Pickup location %s created for shop %s by %s", location_id, data.shopId, actor.id)
    return serialize(collection(pickup.COLLECTION).find_one({"_id": to_object_id(location_id)}))


@app.put("/api/pickup-locations/{location_id}")
def update_pickup_location(location_id: str, data: PickupLocationUpdateDTO, actor: Actor = Depends(get_current_user)):
    location = load(pickup.COLLECTION, location_id, "Pickup location")
    require(actor, "pickup:update", location, "Pickup location")
    changes = data.model_dump(exclude_unset=True)
    merged = {k: v for k, v in location.items() if k in PickupLocation.model_fields} | changes
    changes = PickupLocation(**merged).model_dump(include=set(changes))
    changes["updatedAt"] = now()
    updated = collection(pickup.COLLECTION).find_one_and_update(
        {"_id": location["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER,
    )
    return serialize(updated)


@app.delete("/api/pickup-locations/{location_id}")
def delete_pickup_location(location_id: str, actor: Actor = Depends(get_current_user)):
    location = load(pickup.COLLECTION, location_id, "Pickup location")
    require(actor, "pickup:delete", location, "Pickup location")
    collection(pickup.COLLECTION).delete_one({"_id": location["_id"]})
    logger.info("Pickup location %s deleted by %s", location_id, actor.id)
    return {"id": location_id, "deleted": True}


# Shops
class ShopDTO(BaseModel):
    name: str
    ownerId: str
    description: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[ShopAddress] = None
    currency: str = "CAD"
    taxRate: float = 0
    deliveryOptions: DeliveryOptions = DeliveryOptions()


class ShopUpdateDTO(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[ShopAddress] = None
    currency: Optional[str] = None
    taxRate: Optional[float] = None
    deliveryOptions: Optional[DeliveryOptions] = None
    ownerId: Optional[str] = None
    isActive: Optional[bool] = None


@app.get("/api/shops")
def list_shops(page: int = 1, limit: int = 20):
    return paginate("shop", {"isActive": True}, page, limit, [("createdAt", -1)])


@app.get("/api/shops/my")
def my_shops(actor: Actor = Depends(get_current_user)):
    return serialize(list(collection("shop").find({"ownerId": actor.id}).sort("createdAt", -1)))


@app.get("/api/shops/{shop_id}")
def get_shop(shop_id: str):
    shop = load("shop", shop_id, "Shop")
    if not shop.get("isActive", True):
        raise NotFound("Shop")
    return serialize(shop)


def _ensure_single_active_shop(owner_id: str, exclude: Any = None) -> None:
    query: Dict[str, Any] = {"ownerId": owner_id, "isActive": True}
    if exclude is not None:
        query["_id"] = {"$ne": exclude}
    if collection("shop").find_one(query):
        raise ValidationError(["ownerId: owner already has an active shop"], "Owner already has an active shop")


@app.post("/api/shops", status_code=201)
def create_shop(data: ShopDTO, actor: Actor = Depends(get_current_user)):
    require(actor, "shop:create")
    load("user", data.ownerId, "User")
    _ensure_single_active_shop(data.ownerId)
    shop_id = create_document("shop", Shop(**data.model_dump()))
    logger.info("Shop %s created for owner %s by %s", shop_id, data.ownerId, actor.id)
    return serialize(collection("shop").find_one({"_id": to_object_id(shop_id)}))


@app.put("/api/shops/{shop_id}")
def update_shop(shop_id: str, data: ShopUpdateDTO, actor: Actor = Depends(get_current_user)):
    shop = load("shop", shop_id, "Shop")
    require(actor, "shop:update", shop, "Shop")
    changes = data.model_dump(exclude_unset=True)
    if actor.role != "admin" and ({"ownerId", "isActive"} & set(changes)):
        raise ValidationError(["ownerId/isActive: only an administrator may change these"])
    merged = {k: v for k, v in shop.items() if k in Shop.model_fields} | changes
    validated = Shop(**merged)
    if validated.isActive and (changes.get("ownerId") or changes.get("isActive")):
        _ensure_single_active_shop(validated.ownerId, exclude=shop["_id"])
    changes = validated.model_dump(include=set(changes))
    changes["updatedAt"] = now()
    updated = collection("shop").find_one_and_update(
        {"_id": shop["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER,
    )
    return serialize(updated)


@app.delete("/api/shops/{shop_id}")
def delete_shop(shop_id: str, actor: Actor = Depends(get_current_user)):
    shop = load("shop", shop_id, "Shop")
    require(actor, "shop:delete", shop, "Shop")
    collection("shop").update_one({"_id": shop["_id"]}, {"$set": {"isActive": False, "updatedAt": now()}})
    return {"id": shop_id, "deactivated": True}


# Users
class RoleDTO(BaseModel):
    role: str


@app.get("/api/auth/profile")
def profile(actor: Actor = Depends(get_current_user)):
    return serialize(actor.user)


@app.get("/api/auth/users")
def list_users(role: Optional[str] = None, search: Optional[str] = None, page: int = 1, limit: int = 20,
               actor: Actor = Depends(get_current_user)):
    require(actor, "user:list")
    query: Dict[str, Any] = {}
    if role:
        query["role"] = role
    if search:
        query["$or"] = [
            {"name": {"$regex": search, "$options": "i"}},
            {"email": {"$regex": search, "$options": "i"}},
        ]
    return paginate("user", query, page, limit, [("createdAt", -1)])


@app.put("/api/auth/users/{user_id}/role")
def update_user_role(user_id: str, data: RoleDTO, actor: Actor = Depends(get_current_user)):
    if data.role not in ROLES:
        raise ValidationError([f"role: must be one of {', '.join(ROLES)}"], "Invalid role")
    user = load("user", user_id, "User")
    require(actor, "user:update_role", user, "User")
    updated = collection("user").find_one_and_update(
        {"_id": user["_id"]}, {"$set": {"role": data.role, "updatedAt": now()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("User %s role changed to %s by %s", user_id, data.role, actor.id)
    return serialize(updated)


@app.delete("/api/auth/users/{user_id}")
def deactivate_user(user_id: str, actor: Actor = Depends(get_current_user)):
    user = load("user", user_id, "User")
    require(actor, "user:deactivate", user, "User")
    collection("user").update_one({"_id": user["_id"]}, {"$set": {"isActive": False, "updatedAt": now()}})
    logger.info("User %s deactivated by %s", user_id, actor.id)
    return {"id": user_id, "deactivated": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
