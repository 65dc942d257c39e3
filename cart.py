"""
Cart/Stock read path

Loads a user's cart joined with product data and holds the only route by which
live stock enters the client: fetch_stocks(). Cart quantities are reservation
intents; nothing here ever writes products.stock.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import AutoReconnect

from config import READ_RETRIES
from errors import CartLineNotFound, InsufficientStock, ProductUnavailable
from schemas import CartLineView, StockInfo, StockIssue

logger = logging.getLogger(__name__)

UNKNOWN_PRODUCT = "Unknown Product"


def _object_ids(ids: Iterable[str]) -> List[ObjectId]:
    return [ObjectId(i) for i in sorted(set(ids)) if ObjectId.is_valid(i)]


def _to_view(line: dict, product: Optional[dict]) -> CartLineView:
    product = product or {}
    return CartLineView(
        id=str(line["_id"]),
        product_id=line["product_id"],
        name=product.get("name") or UNKNOWN_PRODUCT,
        price=float(product.get("price") or 0),
        quantity=line["quantity"],
        image_url=product.get("image_url"),
        category=product.get("category_id") or "General",
        description=product.get("description") or "",
        stock=int(product.get("stock") or 0),
        added_at=line.get("added_at"),
    )


def fetch_stocks(db: Database, product_ids: Iterable[str]) -> Dict[str, StockInfo]:
    """Read live stock, name and price for exactly the distinct ids given.

    Timeouts are retried READ_RETRIES times; unknown ids are simply absent
    from the result.
    """
    oids = _object_ids(product_ids)
    if not oids:
        return {}
    query = {"_id": {"$in": oids}}
    projection = {"stock": 1, "name": 1, "price": 1}
    attempt = 0
    while True:
        try:
            rows = list(db["products"].find(query, projection))
            break
        except AutoReconnect as e:
            if attempt >= READ_RETRIES:
                raise
            attempt += 1
            logger.warning("stock fetch timed out (%s), retrying %d/%d", e, attempt, READ_RETRIES)
    return {
        str(r["_id"]): StockInfo(
            stock=int(r.get("stock") or 0),
            name=r.get("name") or UNKNOWN_PRODUCT,
            price=float(r.get("price") or 0),
        )
        for r in rows
    }


class StockCache:
    """Freshest fetched stock map for one cart session."""

    def __init__(self, db: Database):
        self.db = db
        self.stocks: Dict[str, StockInfo] = {}

    def refresh(self, product_ids: Iterable[str]) -> Dict[str, StockInfo]:
        fresh = fetch_stocks(self.db, product_ids)
        self.stocks.update(fresh)
        return fresh

    def get(self, product_id: str) -> Optional[StockInfo]:
        if product_id not in self.stocks:
            self.refresh([product_id])
        return self.stocks.get(product_id)

    def available(self, view: CartLineView) -> int:
        info = self.stocks.get(view.product_id)
        if info is None:
            return view.stock
        return info.stock

    def evict(self, product_id: str) -> None:
        self.stocks.pop(product_id, None)


def load_cart(db: Database, user_id: Optional[str], cache: Optional[StockCache] = None) -> List[CartLineView]:
    if not user_id:
        return []
    lines = list(db["cart_items"].find({"user_id": user_id}).sort("added_at", DESCENDING))
    if not lines:
        return []
    products = {
        str(p["_id"]): p
        for p in db["products"].find({"_id": {"$in": _object_ids(line["product_id"] for line in lines)}})
    }
    views = [_to_view(line, products.get(line["product_id"])) for line in lines]

    cache = cache or StockCache(db)
    cache.refresh(v.product_id for v in views)
    for view in views:
        view.stock = cache.available(view)
    return views


def _get_line(db: Database, user_id: str, cart_line_id: str) -> dict:
    if not ObjectId.is_valid(cart_line_id):
        raise CartLineNotFound(cart_line_id)
    line = db["cart_items"].find_one({"_id": ObjectId(cart_line_id), "user_id": user_id})
    if not line:
        raise CartLineNotFound(cart_line_id)
    return line


def remove_cart_line(db: Database, user_id: str, cart_line_id: str, cache: Optional[StockCache] = None) -> None:
    if not ObjectId.is_valid(cart_line_id):
        raise CartLineNotFound(cart_line_id)
    removed = db["cart_items"].find_one_and_delete({"_id": ObjectId(cart_line_id), "user_id": user_id})
    if not removed:
        raise CartLineNotFound(cart_line_id)
    if cache is not None:
        cache.evict(removed["product_id"])


def set_quantity(db: Database, user_id: str, cart_line_id: str, new_quantity: int,
                 cache: Optional[StockCache] = None) -> Optional[CartLineView]:
    """Persist a new quantity for one line, or remove it when below 1.

    Returns the updated view, or None when the line was removed.
    """
    line = _get_line(db, user_id, cart_line_id)
    if new_quantity < 1:
        if not db["cart_items"].find_one_and_delete({"_id": line["_id"], "user_id": user_id}):
            raise CartLineNotFound(cart_line_id)
        if cache is not None:
            cache.evict(line["product_id"])
        return None

    cache = cache or StockCache(db)
    info = cache.get(line["product_id"])
    if info is None:
        raise ProductUnavailable(line["product_id"])
    if new_quantity > info.stock:
        raise InsufficientStock([
            StockIssue(product_id=line["product_id"], name=info.name, stock=info.stock, requested=new_quantity).model_dump()
        ])

    db["cart_items"].update_one({"_id": line["_id"]}, {"$set": {"quantity": new_quantity}})
    line["quantity"] = new_quantity
    product = db["products"].find_one({"_id": ObjectId(line["product_id"])})
    view = _to_view(line, product)
    view.stock = info.stock
    return view


def add_to_cart(db: Database, user_id: str, product_id: str, quantity: int) -> CartLineView:
    """Add units of a product, merging into the user's existing line for it."""
    if quantity < 1:
        raise ValueError("quantity must be at least 1")
    product = db["products"].find_one({"_id": ObjectId(product_id)}) if ObjectId.is_valid(product_id) else None
    if not product:
        raise ProductUnavailable(product_id)
    stock = int(product.get("stock") or 0)

    existing = db["cart_items"].find_one({"user_id": user_id, "product_id": product_id})
    merged = quantity + (existing["quantity"] if existing else 0)
    if merged > stock:
        raise InsufficientStock([
            StockIssue(product_id=product_id, name=product.get("name") or UNKNOWN_PRODUCT, stock=stock, requested=merged).model_dump()
        ])

    if existing:
        db["cart_items"].update_one({"_id": existing["_id"]}, {"$set": {"quantity": merged}})
        existing["quantity"] = merged
        line = existing
    else:
        line = {
            "user_id": user_id,
            "product_id": product_id,
            "quantity": quantity,
            "added_at": datetime.now(timezone.utc),
        }
        line["_id"] = db["cart_items"].insert_one(line).inserted_id
    return _to_view(line, product)


def clear_cart(db: Database, user_id: str) -> int:
    return db["cart_items"].delete_many({"user_id": user_id}).deleted_count
