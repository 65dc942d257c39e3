import logging
from typing import List

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import doc_to_json
from schemas import CheckoutResult, OrderLine

logger = logging.getLogger(__name__)


def load_order_result(db: Database, order_id: str) -> CheckoutResult:
    """Rebuild the checkout outcome of an already committed order."""
    order = db["orders"].find_one({"_id": ObjectId(order_id)})
    lines = [
        OrderLine(order_id=row["order_id"], product_id=row["product_id"], quantity=row["quantity"], price=row["price"])
        for row in db["order_items"].find({"order_id": order_id})
    ]
    return CheckoutResult(
        order_id=order_id,
        status="replayed",
        total_amount=order["total_amount"],
        customer_name=order["customer_name"],
        lines=lines,
        cart_cleared=None,
    )


def list_orders(db: Database, user_id: str) -> List[dict]:
    """Order history, newest first, each with its items joined to product name/image."""
    orders = [doc_to_json(o) for o in db["orders"].find({"user_id": user_id}).sort("created_at", DESCENDING)]
    if not orders:
        return []
    order_ids = [o["id"] for o in orders]
    try:
        items = list(db["order_items"].find({"order_id": {"$in": order_ids}}))
        product_ids = {i["product_id"] for i in items if ObjectId.is_valid(i["product_id"])}
        products = {
            str(p["_id"]): p
            for p in db["products"].find({"_id": {"$in": [ObjectId(pid) for pid in product_ids]}}, {"name": 1, "image_url": 1})
        }
    except PyMongoError as e:
        logger.warning("loading order items for user %s failed: %s", user_id, e)
        for o in orders:
            o["order_items"] = []
        return orders

    by_order = {}
    for item in items:
        product = products.get(item["product_id"], {})
        row = doc_to_json(item)
        row["product_name"] = product.get("name")
        row["image_url"] = product.get("image_url")
        by_order.setdefault(item["order_id"], []).append(row)
    for o in orders:
        o["order_items"] = by_order.get(o["id"], [])
    return orders
