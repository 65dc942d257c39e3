"""
Storefront error taxonomy

Domain modules raise these; main.py renders them as JSON with the same
"detail" key HTTPException uses, plus a machine-readable "code".
"""

from typing import List, Optional


class StorefrontError(Exception):
    status_code = 500
    code = "storefront_error"
    # a half-written order survived; its checkout key must stay claimed
    orphaned = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def extra(self) -> dict:
        return {}


class NotAuthenticated(StorefrontError):
    status_code = 401
    code = "not_authenticated"

    def __init__(self, message: str = "Please login to continue"):
        super().__init__(message)


class InsufficientStock(StorefrontError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, items: List[dict], order_id: Optional[str] = None, orphaned: bool = False):
        self.items = items
        self.order_id = order_id
        self.orphaned = orphaned
        names = ", ".join(str(i.get("name")) for i in items)
        super().__init__(f"Insufficient stock for: {names}")

    def extra(self) -> dict:
        if self.orphaned:
            return {"items": self.items, "order_id": self.order_id, "orphaned": True}
        return {"items": self.items}


class InvalidCustomerName(StorefrontError):
    status_code = 422
    code = "invalid_customer_name"

    def __init__(self, message: str = "Please enter your real name for the order", needs_prompt: bool = True):
        super().__init__(message)
        self.needs_prompt = needs_prompt

    def extra(self) -> dict:
        return {"needs_prompt": self.needs_prompt}


class OrderCreationFailed(StorefrontError):
    status_code = 502
    code = "order_creation_failed"

    def __init__(self, message: str = "Failed to create order. Please try again."):
        super().__init__(message)


class OrderLinesFailed(StorefrontError):
    status_code = 502
    code = "order_lines_failed"

    def __init__(self, order_id: str, orphaned: bool = False):
        self.order_id = order_id
        self.orphaned = orphaned
        super().__init__("Failed to add items to order")

    def extra(self) -> dict:
        return {"order_id": self.order_id, "orphaned": self.orphaned}


class StockDecrementFailed(StorefrontError):
    """Logged per product; never surfaced."""

    code = "stock_decrement_failed"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Stock decrement failed for product {product_id}")


class CartClearFailed(StorefrontError):
    """Logged only; the order already exists."""

    code = "cart_clear_failed"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Failed to clear cart for user {user_id}")


class ProductUnavailable(StorefrontError):
    status_code = 404
    code = "product_unavailable"

    def __init__(self, product_id: Optional[str] = None):
        self.product_id = product_id
        super().__init__("Could not check product availability")


class CartLineNotFound(StorefrontError):
    status_code = 404
    code = "cart_line_not_found"

    def __init__(self, cart_line_id: str):
        self.cart_line_id = cart_line_id
        super().__init__("Cart item not found")


class CheckoutInProgress(StorefrontError):
    status_code = 409
    code = "checkout_in_progress"

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__("A checkout with this key is already in progress")


class AmbiguousWriteError(StorefrontError):
    status_code = 504
    code = "ambiguous_write"

    def __init__(self, step: str):
        self.step = step
        super().__init__(f"Timed out while {step}; retry with the same idempotency key")

    def extra(self) -> dict:
        return {"step": self.step}


class EmptyCart(StorefrontError):
    status_code = 400
    code = "empty_cart"

    def __init__(self):
        super().__init__("Please add items to your cart before checkout.")
