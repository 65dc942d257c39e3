import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
import hashlib
import secrets
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import LOG_LEVEL, PORT, TOKEN_TTL_DAYS
import database
from database import get_db, ensure_indexes, as_utc, doc_to_json
from cart import StockCache, add_to_cart, clear_cart, fetch_stocks, load_cart, remove_cart_line, set_quantity
from checkout import CheckoutReconciler, validate_stock
from errors import NotAuthenticated, ProductUnavailable, StorefrontError
from orders import list_orders
from schemas import (
    UserCreate, UserLogin, TokenResponse, AuthUser,
    CartAdd, CartQuantityUpdate, CartLineView,
    CheckoutRequest, CheckoutResult,
)

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    yield


app = FastAPI(title="Tropics Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -------------------- Errors --------------------

@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, **exc.extra()},
    )


@app.exception_handler(PyMongoError)
async def data_store_error_handler(request: Request, exc: PyMongoError):
    logger.error("data store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Data store unavailable", "code": "data_store_unavailable"},
    )

# -------------------- Helpers --------------------

def require_db(db: Optional[Database] = Depends(get_db)) -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id format")


def hash_password(password: str, salt: Optional[str] = None) -> tuple[str, str]:
    if not salt:
        salt = secrets.token_hex(16)
    h = hashlib.sha256((salt + password).encode()).hexdigest()
    return h, salt


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    h, _ = hash_password(password, salt)
    return secrets.compare_digest(h, expected_hash)


def get_user_by_token(db: Database, token: str) -> Optional[dict]:
    user = db["users"].find_one({"token": token})
    if not user or not user.get("token_expires"):
        return None
    if as_utc(user["token_expires"]) <= datetime.now(timezone.utc):
        return None
    return user


def _bearer_user(db: Database, authorization: Optional[str]) -> Optional[AuthUser]:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1]
    user = get_user_by_token(db, token)
    if not user:
        return None
    return AuthUser(id=str(user["_id"]), email=user["email"], metadata=user.get("metadata") or {})


async def auth_dependency(authorization: Optional[str] = Header(None), db: Database = Depends(require_db)) -> AuthUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise NotAuthenticated("Missing or invalid authorization header")
    user = _bearer_user(db, authorization)
    if user is None:
        raise NotAuthenticated("Invalid or expired token")
    return user


async def optional_user(authorization: Optional[str] = Header(None), db: Database = Depends(require_db)) -> Optional[AuthUser]:
    return _bearer_user(db, authorization)


# -------------------- Health & Test --------------------

@app.get("/")
def read_root():
    return {"message": "Tropics Storefront API is running"}


@app.get("/test")
def test_database(db: Optional[Database] = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name if hasattr(db, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# -------------------- Auth --------------------

@app.post("/auth/register", response_model=dict)
def register(payload: UserCreate, db: Database = Depends(require_db)):
    existing = db["users"].find_one({"email": payload.email})
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    pw_hash, salt = hash_password(payload.password)
    user_doc = {
        "email": payload.email,
        "full_name": payload.full_name,
        "phone": payload.phone,
        "metadata": payload.metadata,
        "password_hash": pw_hash,
        "salt": salt,
        "is_active": True,
        "created_at": datetime.now(timezone.utc),
        "updated_at": datetime.now(timezone.utc),
    }
    inserted_id = db["users"].insert_one(user_doc).inserted_id
    return {"id": str(inserted_id), "email": payload.email, "full_name": payload.full_name}


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: UserLogin, db: Database = Depends(require_db)):
    user = db["users"].find_one({"email": payload.email})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not verify_password(payload.password, user.get("salt", ""), user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = secrets.token_urlsafe(32)
    expires = datetime.now(timezone.utc) + timedelta(days=TOKEN_TTL_DAYS)
    db["users"].update_one({"_id": user["_id"]}, {"$set": {"token": token, "token_expires": expires}})
    return TokenResponse(access_token=token)


@app.get("/me", response_model=AuthUser)
def me(user: AuthUser = Depends(auth_dependency)):
    return user


# -------------------- Products --------------------

@app.get("/products", response_model=List[dict])
def list_products(q: Optional[str] = Query(None), category_id: Optional[str] = Query(None), db: Database = Depends(require_db)):
    filter_query = {}
    if q:
        filter_query["name"] = {"$regex": q, "$options": "i"}
    if category_id:
        filter_query["category_id"] = category_id
    products = db["products"].find(filter_query).sort("name", 1)
    return [doc_to_json(p) for p in products]


@app.get("/products/{product_id}", response_model=dict)
def get_product(product_id: str, db: Database = Depends(require_db)):
    prod = db["products"].find_one({"_id": to_object_id(product_id)})
    if not prod:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc_to_json(prod)


@app.get("/products/{product_id}/stock", response_model=dict)
def get_product_stock(product_id: str, db: Database = Depends(require_db)):
    pid = str(to_object_id(product_id))
    info = fetch_stocks(db, [pid]).get(pid)
    if info is None:
        raise ProductUnavailable(pid)
    return {"product_id": pid, **info.model_dump()}


# -------------------- Cart --------------------

@app.get("/cart", response_model=List[CartLineView])
def get_cart(user: Optional[AuthUser] = Depends(optional_user), db: Database = Depends(require_db)):
    return load_cart(db, user.id if user else None)


@app.post("/cart", response_model=CartLineView)
def add_cart_line(payload: CartAdd, user: AuthUser = Depends(auth_dependency), db: Database = Depends(require_db)):
    return add_to_cart(db, user.id, payload.product_id, payload.quantity)


@app.patch("/cart/{line_id}", response_model=dict)
def update_cart_line(line_id: str, payload: CartQuantityUpdate, user: AuthUser = Depends(auth_dependency), db: Database = Depends(require_db)):
    view = set_quantity(db, user.id, line_id, payload.quantity, StockCache(db))
    if view is None:
        return {"removed": True, "item": None}
    return {"removed": False, "item": view.model_dump(mode="json")}


@app.delete("/cart/{line_id}", response_model=dict)
def delete_cart_line(line_id: str, user: AuthUser = Depends(auth_dependency), db: Database = Depends(require_db)):
    remove_cart_line(db, user.id, line_id)
    return {"ok": True}


@app.delete("/cart", response_model=dict)
def delete_cart(user: AuthUser = Depends(auth_dependency), db: Database = Depends(require_db)):
    return {"deleted": clear_cart(db, user.id)}


@app.post("/cart/validate", response_model=dict)
def validate_cart(user: AuthUser = Depends(auth_dependency), db: Database = Depends(require_db)):
    result = validate_stock(db, load_cart(db, user.id))
    return {"ok": result.ok, **result.model_dump(mode="json")}


# -------------------- Checkout & Orders --------------------

@app.post("/checkout", response_model=CheckoutResult)
def checkout(payload: CheckoutRequest, user: AuthUser = Depends(auth_dependency), db: Database = Depends(require_db)):
    reconciler = CheckoutReconciler(db, user, payload.idempotency_key, payload.customer_name)
    return reconciler.run()


@app.get("/orders", response_model=List[dict])
def get_orders(user: AuthUser = Depends(auth_dependency), db: Database = Depends(require_db)):
    return list_orders(db, user.id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
