"""Custom exceptions for the order engine."""


class OrderEngineError(Exception):
    """Base exception for all order engine errors."""

    pass


class NotFoundError(OrderEngineError):
    """Base for lookups that found nothing."""

    pass


class OrderNotFoundError(NotFoundError):
    """Raised when an order id doesn't exist (or isn't visible to the caller)."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class ProductNotFoundError(NotFoundError):
    """Raised when a cart line references a product missing from the catalog."""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class CouponNotFoundError(NotFoundError):
    """Raised when a coupon code doesn't exist."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Coupon not found: {code}")


class EmptyCartError(OrderEngineError):
    """Raised when an order is requested from an empty cart."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("Cart is empty")


class AlreadyUsedError(OrderEngineError):
    """Raised when a user tries to consume a coupon a second time."""

    def __init__(self, code: str, user_id: str):
        self.code = code
        self.user_id = user_id
        super().__init__(f"Coupon {code} has already been used by this user")


class CouponExhaustedError(OrderEngineError):
    """Raised when the usage limit was reached before the usage could be recorded."""

    def __init__(self, code: str, usage_limit: int):
        self.code = code
        self.usage_limit = usage_limit
        super().__init__(f"Coupon {code} usage limit ({usage_limit}) exceeded")


class OrderCancelledError(OrderEngineError):
    """Raised when a transition is attempted on a cancelled order."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} is cancelled")


class InvalidTransitionError(OrderEngineError):
    """Raised when a status change isn't allowed from the current state."""

    def __init__(self, order_id: str, current: str, requested: str):
        self.order_id = order_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Order {order_id} cannot move from '{current}' to '{requested}'"
        )


class OwnershipError(OrderEngineError):
    """Raised when the caller doesn't own the order."""

    def __init__(self, order_id: str, reason: str | None = None):
        self.order_id = order_id
        super().__init__(reason or "Email does not match order records")
