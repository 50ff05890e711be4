"""
Collaborator contracts consumed by the checkout core, plus their MongoDB
implementations. The core only ever sees the Protocols; main.py wires the
Mongo classes in.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import now_utc
from schemas import Cart, CartItem, Coupon, Order, OrderItem, PaymentAttempt, Product, SavedAddress, Seller

logger = logging.getLogger(__name__)


def to_object_id(id_str: str) -> Optional[ObjectId]:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None


# ---------------------- Contracts ----------------------

class CatalogStore(Protocol):
    def get_product(self, product_id: str) -> Optional[Product]: ...

class CartStore(Protocol):
    def get_items(self, user_id: str) -> List[CartItem]: ...
    def save_items(self, user_id: str, items: List[CartItem]) -> None: ...
    def clear(self, user_id: str) -> None: ...

class CouponStore(Protocol):
    def find_by_code(self, code: str) -> Optional[Coupon]: ...
    def increment_usage(self, code: str) -> None: ...

class SellerRegistry(Protocol):
    def find_active(self, referral_code: str) -> Optional[Seller]: ...

class SavedAddressStore(Protocol):
    def list_for_user(self, user_id: str) -> List[SavedAddress]: ...
    def clear_default(self, user_id: str) -> None: ...
    def update(self, address_id: str, fields: Dict[str, Any]) -> None: ...
    def insert(self, address: SavedAddress) -> str: ...

class OrderStore(Protocol):
    def insert_order(self, order: Order) -> str: ...
    def insert_items(self, items: List[OrderItem]) -> None: ...
    def get_order(self, order_id: str) -> Optional[Order]: ...
    def find_by_idempotency_key(self, key: str) -> Optional[str]: ...
    def list_items(self, order_id: str) -> List[OrderItem]: ...
    def update_payment(self, order_id: str, fields: Dict[str, Any]) -> None: ...
    def mark_coupon_redeemed(self, order_id: str) -> None: ...

class PaymentAttemptStore(Protocol):
    def insert(self, attempt: PaymentAttempt) -> str: ...
    def list_for_order(self, order_id: str) -> List[PaymentAttempt]: ...


# ---------------------- MongoDB ----------------------

class MongoCatalogStore:
    def __init__(self, db: Database):
        self.col = db["product"]

    def get_product(self, product_id: str) -> Optional[Product]:
        _id = to_object_id(product_id)
        doc = self.col.find_one({"_id": _id}) if _id else None
        if not doc:
            return None
        doc.pop("_id")
        return Product(**doc)


class MongoCartStore:
    def __init__(self, db: Database):
        self.col = db["cart"]

    def get_items(self, user_id: str) -> List[CartItem]:
        doc = self.col.find_one({"user_id": user_id}) or {}
        return Cart(user_id=user_id, items=doc.get("items", [])).items

    def save_items(self, user_id: str, items: List[CartItem]) -> None:
        self.col.update_one(
            {"user_id": user_id},
            {"$set": {"items": [it.model_dump() for it in items], "updated_at": now_utc()}},
            upsert=True,
        )

    def clear(self, user_id: str) -> None:
        self.col.update_one({"user_id": user_id}, {"$set": {"items": [], "updated_at": now_utc()}})


class MongoCouponStore:
    def __init__(self, db: Database):
        self.col = db["coupon"]

    def find_by_code(self, code: str) -> Optional[Coupon]:
        doc = self.col.find_one({"code": code.strip().upper()})
        if not doc:
            return None
        doc.pop("_id")
        return Coupon(**doc)

    def increment_usage(self, code: str) -> None:
        res = self.col.find_one_and_update(
            {"code": code.strip().upper()},
            {"$inc": {"used_count": 1}, "$set": {"updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if res is None:
            raise LookupError(f"Coupon {code} not found")


class MongoSellerRegistry:
    def __init__(self, db: Database):
        self.col = db["seller"]

    def find_active(self, referral_code: str) -> Optional[Seller]:
        doc = self.col.find_one({"referral_code": referral_code, "status": "active"})
        if not doc:
            return None
        doc.pop("_id")
        return Seller(**doc)


class MongoSavedAddressStore:
    def __init__(self, db: Database):
        self.col = db["customer_address"]

    def list_for_user(self, user_id: str) -> List[SavedAddress]:
        out = []
        for doc in self.col.find({"user_id": user_id}).sort("is_default", -1):
            doc["id"] = str(doc.pop("_id"))
            out.append(SavedAddress(**doc))
        return out

    def clear_default(self, user_id: str) -> None:
        self.col.update_many({"user_id": user_id}, {"$set": {"is_default": False, "updated_at": now_utc()}})

    def update(self, address_id: str, fields: Dict[str, Any]) -> None:
        res = self.col.update_one({"_id": to_object_id(address_id)}, {"$set": {**fields, "updated_at": now_utc()}})
        if res.matched_count == 0:
            raise LookupError(f"Address {address_id} not found")

    def insert(self, address: SavedAddress) -> str:
        doc = address.model_dump(exclude={"id"})
        doc.update({"created_at": now_utc(), "updated_at": now_utc()})
        return str(self.col.insert_one(doc).inserted_id)


class MongoOrderStore:
    def __init__(self, db: Database):
        self.orders = db["order"]
        self.items = db["order_item"]

    def ensure_indexes(self) -> None:
        self.orders.create_index("idempotency_key", unique=True, sparse=True)
        self.items.create_index("order_id")

    def insert_order(self, order: Order) -> str:
        doc = order.model_dump()
        doc.update({"created_at": now_utc(), "updated_at": now_utc()})
        try:
            return str(self.orders.insert_one(doc).inserted_id)
        except DuplicateKeyError:
            existing = self.find_by_idempotency_key(order.idempotency_key or "")
            if existing is None:
                raise
            logger.info("Order for idempotency key %s already exists (%s)", order.idempotency_key, existing)
            return existing

    def insert_items(self, items: List[OrderItem]) -> None:
        if not items:
            return
        now = now_utc()
        self.items.insert_many([{**it.model_dump(), "created_at": now} for it in items])

    def get_order(self, order_id: str) -> Optional[Order]:
        _id = to_object_id(order_id)
        doc = self.orders.find_one({"_id": _id}) if _id else None
        if not doc:
            return None
        doc.pop("_id")
        return Order(**doc)

    def find_by_idempotency_key(self, key: str) -> Optional[str]:
        doc = self.orders.find_one({"idempotency_key": key}, {"_id": 1})
        return str(doc["_id"]) if doc else None

    def list_items(self, order_id: str) -> List[OrderItem]:
        out = []
        for doc in self.items.find({"order_id": order_id}):
            doc.pop("_id")
            out.append(OrderItem(**doc))
        return out

    def update_payment(self, order_id: str, fields: Dict[str, Any]) -> None:
        self.orders.update_one({"_id": to_object_id(order_id)}, {"$set": {**fields, "updated_at": now_utc()}})

    def mark_coupon_redeemed(self, order_id: str) -> None:
        self.orders.update_one({"_id": to_object_id(order_id)}, {"$set": {"coupon_redeemed": True, "updated_at": now_utc()}})


class MongoPaymentAttemptStore:
    def __init__(self, db: Database):
        self.col = db["payment_attempt"]

    def insert(self, attempt: PaymentAttempt) -> str:
        doc = attempt.model_dump()
        doc.update({"created_at": now_utc(), "updated_at": now_utc()})
        return str(self.col.insert_one(doc).inserted_id)

    def list_for_order(self, order_id: str) -> List[PaymentAttempt]:
        out = []
        for doc in self.col.find({"order_id": order_id}).sort("created_at", -1):
            doc.pop("_id")
            out.append(PaymentAttempt(**doc))
        return out
