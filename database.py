"""
Data Store access

One MongoClient per process, configured from the environment. Collections
used by the storefront: products, cart_items, orders, order_items, users and
checkout_keys (idempotency claims).
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import AutoReconnect, ExecutionTimeout, WTimeoutError

from config import DATABASE_URL, DATABASE_NAME, DATA_STORE_TIMEOUT_MS

logger = logging.getLogger(__name__)

# Errors after which a write may or may not have been applied.
# NetworkTimeout is a subclass of AutoReconnect.
TIMEOUT_ERRORS = (AutoReconnect, ExecutionTimeout, WTimeoutError)

db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(
        DATABASE_URL,
        serverSelectionTimeoutMS=DATA_STORE_TIMEOUT_MS,
        connectTimeoutMS=DATA_STORE_TIMEOUT_MS,
        socketTimeoutMS=DATA_STORE_TIMEOUT_MS,
    )
    db = client[DATABASE_NAME]


def get_db() -> Optional[Database]:
    return db


def create_document(database: Database, collection_name: str, data) -> str:
    """Insert a model or dict, stamping created_at/updated_at, and return the new id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    return str(database[collection_name].insert_one(doc).inserted_id)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def doc_to_json(doc: dict) -> dict:
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            k = "id"
        if isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, datetime):
            out[k] = as_utc(v).isoformat()
        elif isinstance(v, list):
            out[k] = [doc_to_json(x) if isinstance(x, dict) else (str(x) if isinstance(x, ObjectId) else x) for x in v]
        else:
            out[k] = v
    return out


def ensure_indexes(database: Database) -> None:
    database["users"].create_index("email", unique=True)
    database["cart_items"].create_index([("user_id", ASCENDING), ("added_at", DESCENDING)])
    database["order_items"].create_index("order_id")
    database["orders"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    logger.debug("indexes ensured on %s", database.name)
