"""
Checkout reconciler

Turns a user's cart into an order as a saga:

    validate stock -> resolve customer -> insert order -> insert lines
    -> reserve stock -> clear cart

Stock is reserved with a single conditional update per product
(decrement only while stock >= qty), so concurrent checkouts can never drive
stock negative. A reservation the data store refuses rolls the order back;
a data store error on one product is logged and the sale goes through.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from cart import clear_cart, fetch_stocks, load_cart
from config import IDEMPOTENCY_WINDOW_HOURS, LOW_STOCK_THRESHOLD
from database import TIMEOUT_ERRORS, as_utc, create_document
from errors import (
    AmbiguousWriteError, CartClearFailed, CheckoutInProgress, EmptyCart,
    InsufficientStock, InvalidCustomerName, NotAuthenticated,
    OrderCreationFailed, OrderLinesFailed, StockDecrementFailed,
    StorefrontError,
)
from orders import load_order_result
from schemas import (
    AuthUser, CartLineView, CheckoutResult, CustomerInfo, Order, OrderLine,
    StockIssue, ValidationResult,
)

logger = logging.getLogger(__name__)

INVALID_NAME_MARKERS = ("customer", "user", "placeholder", "test", "default")
MIN_NAME_LENGTH = 2


class CheckoutState(str, Enum):
    IDLE = "idle"
    VALIDATING_STOCK = "validating_stock"
    RESOLVING_CUSTOMER = "resolving_customer"
    NEED_NAME_PROMPT = "need_name_prompt"
    CREATING_ORDER = "creating_order"
    CREATING_LINES = "creating_lines"
    DECREMENTING_STOCK = "decrementing_stock"
    CLEARING_CART = "clearing_cart"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


# -------------------- Stock --------------------

def _requested_by_product(lines: List[CartLineView]) -> Dict[str, int]:
    requested: Dict[str, int] = {}
    for line in lines:
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity
    return requested


def validate_stock(db: Database, lines: List[CartLineView]) -> ValidationResult:
    """Classify every product in the cart against freshly fetched stock.

    Out of stock or over-requested products are offending and block checkout;
    products below LOW_STOCK_THRESHOLD are only reported.
    """
    requested = _requested_by_product(lines)
    stocks = fetch_stocks(db, requested.keys())
    names = {line.product_id: line.name for line in lines}

    result = ValidationResult(stocks=stocks)
    for product_id, qty in requested.items():
        info = stocks.get(product_id)
        stock = info.stock if info else 0
        issue = StockIssue(
            product_id=product_id,
            name=info.name if info else names[product_id],
            stock=stock,
            requested=qty,
        )
        if stock == 0 or qty > stock:
            result.offending.append(issue)
        elif stock < LOW_STOCK_THRESHOLD:
            result.low_stock.append(issue)
    return result


def reserve_stock(db: Database, product_id: str, qty: int) -> bool:
    """Atomically take qty units; False when fewer than qty are left."""
    if qty < 1:
        raise ValueError("qty must be at least 1")
    updated = db["products"].find_one_and_update(
        {"_id": ObjectId(product_id), "stock": {"$gte": qty}},
        {"$inc": {"stock": -qty}, "$set": {"updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    return updated is not None


def release_stock(db: Database, product_id: str, qty: int) -> None:
    db["products"].update_one({"_id": ObjectId(product_id)}, {"$inc": {"stock": qty}})


# -------------------- Customer --------------------

def is_acceptable_name(name: Optional[str]) -> bool:
    name = (name or "").strip()
    if len(name) < MIN_NAME_LENGTH:
        return False
    lowered = name.lower()
    return not any(marker in lowered for marker in INVALID_NAME_MARKERS)


def check_prompted_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if len(name) < MIN_NAME_LENGTH:
        raise InvalidCustomerName("Please enter a valid name (minimum 2 characters)")
    return name


def resolve_customer_identity(db: Database, user: AuthUser) -> CustomerInfo:
    profile = None
    try:
        profile = db["users"].find_one({"_id": ObjectId(user.id)}, {"full_name": 1, "email": 1, "phone": 1})
    except PyMongoError as e:
        logger.warning("profile lookup for user %s failed, using identity metadata: %s", user.id, e)
    profile = profile or {}
    meta = user.metadata or {}
    return CustomerInfo(
        name=profile.get("full_name") or meta.get("full_name") or meta.get("name") or "",
        email=profile.get("email") or user.email or "",
        phone=profile.get("phone") or meta.get("phone") or "",
    )


# -------------------- Reconciler --------------------

class CheckoutReconciler:
    """One checkout attempt for one user. Not resumable; build a new one per request."""

    def __init__(self, db: Database, user: Optional[AuthUser], idempotency_key: str,
                 customer_name: Optional[str] = None):
        self.db = db
        self.user = user
        self.idempotency_key = idempotency_key
        self.customer_name = customer_name
        self.state = CheckoutState.IDLE
        self.order_id: Optional[str] = None

    @property
    def claim_id(self) -> str:
        return f"{self.user.id}:{self.idempotency_key}"

    def _transition(self, state: CheckoutState) -> None:
        logger.debug("checkout %s: %s -> %s", self.idempotency_key, self.state.value, state.value)
        self.state = state

    def run(self) -> CheckoutResult:
        if self.user is None:
            raise NotAuthenticated()
        replay = self._claim()
        if replay is not None:
            self._transition(CheckoutState.DONE)
            return replay
        try:
            return self._run_claimed()
        except AmbiguousWriteError:
            # outcome unknown; keep the claim so a retry cannot double-order
            raise
        except StorefrontError as e:
            if not e.orphaned:
                self._release_claim()
            raise
        except PyMongoError:
            self._release_claim()
            raise

    # ---- idempotency claim ----

    def _claim(self) -> Optional[CheckoutResult]:
        """Claim the key, or return the committed order a previous attempt made with it."""
        now = datetime.now(timezone.utc)
        claims = self.db["checkout_keys"]
        try:
            claims.insert_one({"_id": self.claim_id, "order_id": None, "created_at": now})
            return None
        except DuplicateKeyError:
            existing = claims.find_one({"_id": self.claim_id})
        except TIMEOUT_ERRORS:
            raise AmbiguousWriteError("claiming the checkout")

        if existing is None:
            raise CheckoutInProgress(self.idempotency_key)
        if now - as_utc(existing["created_at"]) > timedelta(hours=IDEMPOTENCY_WINDOW_HOURS):
            renewed = claims.find_one_and_update(
                {"_id": self.claim_id, "created_at": existing["created_at"]},
                {"$set": {"order_id": None, "created_at": now}},
            )
            if renewed is None:
                raise CheckoutInProgress(self.idempotency_key)
            return None
        if existing.get("order_id"):
            logger.info("checkout %s replayed order %s", self.idempotency_key, existing["order_id"])
            return load_order_result(self.db, existing["order_id"])
        raise CheckoutInProgress(self.idempotency_key)

    def _commit_claim(self, order_id: str) -> None:
        try:
            self.db["checkout_keys"].update_one({"_id": self.claim_id}, {"$set": {"order_id": order_id}})
        except PyMongoError as e:
            logger.error("could not record order %s on checkout claim %s: %s", order_id, self.claim_id, e)

    def _release_claim(self) -> None:
        try:
            self.db["checkout_keys"].delete_one({"_id": self.claim_id, "order_id": None})
        except PyMongoError as e:
            logger.error("could not release checkout claim %s: %s", self.claim_id, e)

    # ---- compensation ----

    def _discard_order(self, order_id: str) -> bool:
        """Delete the header, then its lines. False when the header may still be visible."""
        try:
            self.db["orders"].delete_one({"_id": ObjectId(order_id)})
        except PyMongoError as e:
            logger.error("order %s is orphaned, compensation failed: %s", order_id, e)
            return False
        try:
            self.db["order_items"].delete_many({"order_id": order_id})
        except PyMongoError as e:
            logger.warning("lines of discarded order %s were left behind: %s", order_id, e)
        return True

    def _release_reservations(self, reserved: Dict[str, int]) -> None:
        for product_id, qty in reserved.items():
            try:
                release_stock(self.db, product_id, qty)
            except PyMongoError as e:
                logger.error("could not return %d units to product %s: %s", qty, product_id, e)

    # ---- saga ----

    def _run_claimed(self) -> CheckoutResult:
        db, user = self.db, self.user

        self._transition(CheckoutState.VALIDATING_STOCK)
        lines = load_cart(db, user.id)
        if not lines:
            self._transition(CheckoutState.ABORTED)
            raise EmptyCart()
        validation = validate_stock(db, lines)
        if not validation.ok:
            self._transition(CheckoutState.ABORTED)
            raise InsufficientStock([issue.model_dump() for issue in validation.offending])

        self._transition(CheckoutState.RESOLVING_CUSTOMER)
        customer = resolve_customer_identity(db, user)
        name = customer.name.strip()
        if not is_acceptable_name(name):
            self._transition(CheckoutState.NEED_NAME_PROMPT)
            if self.customer_name is None:
                raise InvalidCustomerName()
            name = check_prompted_name(self.customer_name)

        self._transition(CheckoutState.CREATING_ORDER)
        prices = {pid: info.price for pid, info in validation.stocks.items()}
        total = sum((Decimal(str(prices[line.product_id])) * line.quantity for line in lines), Decimal("0"))
        order = Order(
            user_id=user.id,
            customer_name=name,
            customer_email=customer.email or user.email,
            customer_phone=customer.phone,
            total_amount=float(total),
            idempotency_key=self.idempotency_key,
        )
        # id chosen up front so a timed out insert can still be found and undone
        order_doc = order.model_dump()
        order_doc["_id"] = ObjectId()
        try:
            order_id = create_document(db, "orders", order_doc)
        except TIMEOUT_ERRORS as e:
            self._transition(CheckoutState.FAILED)
            if self._discard_order(str(order_doc["_id"])):
                logger.error("order insert timed out for user %s, undone: %s", user.id, e)
                raise OrderCreationFailed() from e
            raise AmbiguousWriteError("creating the order")
        except PyMongoError as e:
            self._transition(CheckoutState.FAILED)
            logger.error("order insert failed for user %s: %s", user.id, e)
            raise OrderCreationFailed() from e

        self._transition(CheckoutState.CREATING_LINES)
        order_lines = [
            OrderLine(order_id=order_id, product_id=line.product_id, quantity=line.quantity, price=prices[line.product_id])
            for line in lines
        ]
        try:
            db["order_items"].insert_many([ol.model_dump() for ol in order_lines])
        except PyMongoError as e:
            self._transition(CheckoutState.FAILED)
            logger.error("order items insert failed for order %s: %s", order_id, e)
            compensated = self._discard_order(order_id)
            raise OrderLinesFailed(order_id, orphaned=not compensated) from e

        self._transition(CheckoutState.DECREMENTING_STOCK)
        reserved: Dict[str, int] = {}
        for product_id, qty in sorted(_requested_by_product(lines).items()):
            try:
                ok = reserve_stock(db, product_id, qty)
            except PyMongoError as e:
                logger.error("%s: %s", StockDecrementFailed(product_id), e)
                continue
            if not ok:
                self._release_reservations(reserved)
                compensated = self._discard_order(order_id)
                self._transition(CheckoutState.ABORTED)
                raise InsufficientStock([self._shortfall(product_id, qty, validation)],
                                        order_id=order_id, orphaned=not compensated)
            reserved[product_id] = qty

        self.order_id = order_id
        self._commit_claim(order_id)

        self._transition(CheckoutState.CLEARING_CART)
        cart_cleared = True
        try:
            clear_cart(db, user.id)
        except PyMongoError as e:
            logger.warning("%s: %s", CartClearFailed(user.id), e)
            cart_cleared = False

        self._transition(CheckoutState.DONE)
        logger.info("order %s created for user %s, total %s", order_id, user.id, total)
        return CheckoutResult(
            order_id=order_id,
            status="created",
            total_amount=float(total),
            customer_name=name,
            lines=order_lines,
            low_stock=validation.low_stock,
            cart_cleared=cart_cleared,
        )

    def _shortfall(self, product_id: str, qty: int, validation: ValidationResult) -> dict:
        name = validation.stocks[product_id].name
        try:
            info = fetch_stocks(self.db, [product_id]).get(product_id)
            stock = info.stock if info else 0
        except PyMongoError:
            stock = 0
        return StockIssue(product_id=product_id, name=name, stock=stock, requested=qty).model_dump()
