"""Order admission and the order status state machine."""
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .cache import Cache
from .catalog import CatalogService
from .config import Settings
from .database import create_document, parse_object_id, serialize_doc, utcnow
from .errors import BadRequestError, ConflictError, NotFoundError, OrderRejected, RejectReason
from .schemas import OrderCreate, OrderItemIn, OrderStatus
from .users import UserService

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: {OrderStatus.REFUNDED},
    OrderStatus.REFUNDED: set(),
}

CANCELLABLE = {OrderStatus.PENDING, OrderStatus.CONFIRMED}

EDITABLE_FIELDS = {"trackingNumber", "shippingCarrier", "estimatedDelivery", "notes", "paymentStatus", "paymentMethod"}

MAX_NUMBER_ATTEMPTS = 5


def calculate_totals(
    items: List[Dict[str, Any]],
    shipping_cost: Optional[float] = None,
    tax_amount: Optional[float] = None,
    discount_amount: Optional[float] = None,
    tax_rate: float = 0.08,
) -> Dict[str, float]:
    """Price an order from its validated item snapshots.

    Tax falls back to ``tax_rate`` of the subtotal only when no figure was
    supplied; an explicit 0 is kept. Every component is rounded to cents
    before the total is summed.
    """
    subtotal = round(sum(item["price"] * item["quantity"] for item in items), 2)
    shipping = round(shipping_cost or 0.0, 2)
    tax = round(subtotal * tax_rate if tax_amount is None else tax_amount, 2)
    discount = round(discount_amount or 0.0, 2)
    total = round(subtotal + shipping + tax - discount, 2)
    if total < 0:
        raise BadRequestError("Discount exceeds order value")
    return {
        "subtotal": subtotal,
        "shippingCost": shipping,
        "taxAmount": tax,
        "discountAmount": discount,
        "total": total,
    }


def owner_summary(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not user:
        return None
    return {
        "id": user.get("id"),
        "telegramId": user.get("telegramId"),
        "firstName": user.get("firstName"),
        "lastName": user.get("lastName"),
    }


class OrderService:
    def __init__(
        self,
        db: Database,
        cache: Cache,
        catalog: CatalogService,
        users: UserService,
        settings: Settings,
    ):
        self.db = db
        self.orders = db["orders"]
        self.counters = db["counters"]
        self.cache = cache
        self.catalog = catalog
        self.users = users
        self.settings = settings

    # ---------- numbering ----------

    def next_order_number(self, now: Optional[datetime] = None) -> str:
        """``YYMMDD`` followed by the zero-padded daily sequence."""
        day = (now or utcnow()).strftime("%y%m%d")
        key = f"order_counter:{day}"
        counter = self.cache.incr(key)
        if counter is None:
            counter = self._counter_from_db(key, day)
        else:
            self.cache.expire(key, self.settings.order_counter_ttl)
        return f"{day}{counter:04d}"

    def _counter_from_db(self, key: str, day: str) -> int:
        logger.warning("Cache unavailable, drawing %s from MongoDB", key)
        self.counters.update_one({"_id": key}, {"$max": {"value": self._highest_used(day)}}, upsert=True)
        doc = self.counters.find_one_and_update(
            {"_id": key},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["value"])

    def _highest_used(self, day: str) -> int:
        """Largest sequence already taken by a stored order on ``day``."""
        doc = self.orders.find_one(
            {"orderNumber": {"$regex": f"^{day}"}},
            sort=[("orderNumber", DESCENDING)],
        )
        return int(doc["orderNumber"][len(day):]) if doc else 0

    def _resync_counter(self, day: str) -> None:
        """Move both counters past every number the day has already used."""
        key = f"order_counter:{day}"
        highest = self._highest_used(day)
        logger.warning("Resyncing %s to %d", key, highest)
        self.counters.update_one({"_id": key}, {"$max": {"value": highest}}, upsert=True)
        self.cache.raise_to(key, highest, self.settings.order_counter_ttl)

    # ---------- admission ----------

    def create(self, user: Dict[str, Any], request: OrderCreate) -> Dict[str, Any]:
        order_number = self.next_order_number()
        reservations: List[Tuple[ObjectId, int]] = []
        try:
            items = self._admit_items(request.items, reservations)
            totals = calculate_totals(
                items,
                shipping_cost=request.shippingCost,
                tax_amount=request.taxAmount,
                discount_amount=request.discountAmount,
                tax_rate=self.settings.default_tax_rate,
            )
            now = utcnow()
            doc = {
                "orderNumber": order_number,
                "userId": ObjectId(user["id"]),
                "userTelegramId": user["telegramId"],
                "items": items,
                **totals,
                "currency": request.currency.upper(),
                "status": OrderStatus.PENDING.value,
                "paymentStatus": "pending",
                "paymentMethod": request.paymentMethod,
                "shippingAddress": request.shippingAddress.model_dump(),
                "billingAddress": request.billingAddress.model_dump() if request.billingAddress else None,
                "notes": request.notes,
                "statusHistory": [{"status": OrderStatus.PENDING.value, "timestamp": now, "note": "Order created"}],
            }
            order_id = self._insert(doc)
        except Exception:
            self._release(reservations)
            raise

        self.catalog.record_order(items)
        self.users.clear_cart(user["id"])
        self.users.record_purchase(user["id"], totals["total"])

        saved = self.orders.find_one({"_id": order_id})
        logger.info("Order %s created: %d items, total %.2f", saved["orderNumber"], len(items), saved["total"])
        return self._present(saved, user)

    def _admit_items(self, requested: List[OrderItemIn], reservations: List[Tuple[ObjectId, int]]) -> List[Dict[str, Any]]:
        """Validate and reserve each line in request order.

        Every successful reservation is appended to ``reservations`` so the
        caller can hand the units back if a later line is rejected.
        """
        items = []
        for item in requested:
            product = self.catalog.load_for_order(item.productId)
            if not product or not product.get("isActive", True):
                logger.warning("Order rejected: product %s unavailable", item.productId)
                raise OrderRejected(
                    RejectReason.PRODUCT_UNAVAILABLE,
                    f"Product {item.productId} not found or inactive",
                )

            if product.get("trackStock", True):
                if not self.catalog.reserve_stock(product["_id"], item.quantity):
                    current = self.catalog.load_for_order(item.productId) or product
                    logger.warning("Order rejected: insufficient stock for %s", product["name"])
                    raise OrderRejected(
                        RejectReason.INSUFFICIENT_STOCK,
                        f"Insufficient stock for product {product['name']}. "
                        f"Available: {current.get('stock', 0)}, Requested: {item.quantity}",
                    )
                reservations.append((product["_id"], item.quantity))

            images = product.get("images") or []
            items.append(
                {
                    "productId": product["_id"],
                    "name": product["name"],
                    "price": product["price"],
                    "quantity": item.quantity,
                    "selectedVariant": item.selectedVariant,
                    "thumbnail": product.get("thumbnail") or (images[0] if images else None),
                }
            )
        return items

    def _insert(self, doc: Dict[str, Any]) -> ObjectId:
        for _ in range(MAX_NUMBER_ATTEMPTS):
            try:
                return ObjectId(create_document(self.db, "orders", doc))
            except DuplicateKeyError:
                logger.warning("Order number %s already taken", doc["orderNumber"])
                self._resync_counter(doc["orderNumber"][:6])
                doc["orderNumber"] = self.next_order_number()
        raise ConflictError("Could not allocate an order number")

    def _release(self, reservations: List[Tuple[ObjectId, int]]) -> None:
        for product_oid, quantity in reversed(reservations):
            self.catalog.release_stock(product_oid, quantity)

    # ---------- reads ----------

    def list_for_user(self, user: Dict[str, Any], page: int = 1, limit: int = 10) -> Dict[str, Any]:
        filt = {"userId": ObjectId(user["id"])}
        docs = self.orders.find(filt).sort("createdAt", DESCENDING).skip((page - 1) * limit).limit(limit)
        total = self.orders.count_documents(filt)
        return {
            "orders": [self._present(d, user) for d in docs],
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit) if limit else 0,
        }

    def get_for_user(self, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        return self._present(self._owned(order_id, user), user)

    def stats(self, user: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        match = {"userId": ObjectId(user["id"])} if user else {}
        result = list(
            self.orders.aggregate(
                [
                    {"$match": match},
                    {
                        "$group": {
                            "_id": None,
                            "totalOrders": {"$sum": 1},
                            "totalRevenue": {"$sum": "$total"},
                            "avgOrderValue": {"$avg": "$total"},
                            "pendingOrders": {"$sum": {"$cond": [{"$eq": ["$status", "pending"]}, 1, 0]}},
                            "completedOrders": {"$sum": {"$cond": [{"$eq": ["$status", "delivered"]}, 1, 0]}},
                            "cancelledOrders": {"$sum": {"$cond": [{"$eq": ["$status", "cancelled"]}, 1, 0]}},
                        }
                    },
                ]
            )
        )
        if not result:
            return {
                "totalOrders": 0,
                "totalRevenue": 0,
                "avgOrderValue": 0,
                "pendingOrders": 0,
                "completedOrders": 0,
                "cancelledOrders": 0,
            }
        stats = result[0]
        stats.pop("_id", None)
        return stats

    # ---------- transitions ----------

    def update_status(self, order_id: str, status: OrderStatus, note: Optional[str] = None) -> Dict[str, Any]:
        oid = parse_object_id(order_id, "Order")
        doc = self.orders.find_one({"_id": oid})
        if doc is None:
            raise NotFoundError("Order", order_id)

        current = OrderStatus(doc["status"])
        if status not in TRANSITIONS[current]:
            raise OrderRejected(
                RejectReason.INVALID_STATE,
                f"Order {doc['orderNumber']} cannot move from {current.value} to {status.value}",
            )

        now = utcnow()
        changes: Dict[str, Any] = {"status": status.value, "updatedAt": now}
        if status == OrderStatus.DELIVERED:
            changes["deliveredAt"] = now
        elif status == OrderStatus.CANCELLED:
            changes["cancelledAt"] = now
            if note:
                changes["cancelReason"] = note

        # guarded on the status we validated against
        updated = self.orders.find_one_and_update(
            {"_id": oid, "status": current.value},
            {"$set": changes, "$push": {"statusHistory": {"status": status.value, "timestamp": now, "note": note}}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise OrderRejected(RejectReason.INVALID_STATE, f"Order {doc['orderNumber']} changed concurrently")

        logger.info("Order %s: %s -> %s", updated["orderNumber"], current.value, status.value)
        if status == OrderStatus.CANCELLED:
            self._restock(updated)
        return self._present(updated, self._owner_of(updated))

    def cancel(self, order_id: str, user: Dict[str, Any], reason: Optional[str] = None) -> Dict[str, Any]:
        doc = self._owned(order_id, user)
        if OrderStatus(doc["status"]) not in CANCELLABLE:
            raise OrderRejected(RejectReason.INVALID_STATE, "Order cannot be cancelled at this stage")
        return self.update_status(order_id, OrderStatus.CANCELLED, reason)

    def update_details(self, order_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise BadRequestError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        oid = parse_object_id(order_id, "Order")
        updated = self.orders.find_one_and_update(
            {"_id": oid},
            {"$set": {**changes, "updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise NotFoundError("Order", order_id)
        return self._present(updated, self._owner_of(updated))

    # ---------- internals ----------

    def _owned(self, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        doc = self.orders.find_one({"_id": parse_object_id(order_id, "Order"), "userId": ObjectId(user["id"])})
        if doc is None:
            raise NotFoundError("Order", order_id)
        return doc

    def _owner_of(self, doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            return self.users.find_by_id(str(doc["userId"]))
        except NotFoundError:
            return None

    def _restock(self, doc: Dict[str, Any]) -> None:
        for item in doc["items"]:
            product = self.catalog.load_for_order(str(item["productId"]))
            if product and product.get("trackStock", True):
                self.catalog.release_stock(product["_id"], item["quantity"])

    def _present(self, doc: Dict[str, Any], user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        order = serialize_doc(doc)
        order["user"] = owner_summary(user)
        return order
