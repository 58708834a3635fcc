"""Custom exceptions for the canteen service.

Every error carries a stable ``code`` for clients and a readable message.
"""


class CanteenError(Exception):
    """Base exception for all canteen errors."""

    code = "CANTEEN_ERROR"


class EmptyOrderError(CanteenError):
    """Raised when an order is placed without any items."""

    code = "EMPTY_ORDER"

    def __init__(self):
        super().__init__("Please provide at least one item")


class InvalidQuantityError(CanteenError):
    """Raised when a requested quantity is not a positive integer."""

    code = "INVALID_QUANTITY"

    def __init__(self, item_id: str, quantity):
        self.item_id = item_id
        self.quantity = quantity
        super().__init__(f"Quantity for item {item_id} must be a positive integer, got {quantity!r}")


class ItemsNotFoundError(CanteenError):
    """Raised when one or more requested menu items do not exist."""

    code = "ITEMS_NOT_FOUND"

    def __init__(self, item_ids: list[str]):
        self.item_ids = list(item_ids)
        super().__init__(f"Food items not found: {', '.join(self.item_ids)}")


class InsufficientStockError(CanteenError):
    """Raised when stock cannot cover a request. Lists every short item."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, item_names: list[str]):
        self.item_names = list(item_names)
        super().__init__(
            "The following items are not available in sufficient quantity: "
            + ", ".join(self.item_names)
        )


class OrderNotFoundError(CanteenError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class InvalidTransitionError(CanteenError):
    """Raised when an order status change is not allowed from its current status."""

    code = "INVALID_TRANSITION"

    def __init__(self, order_id: str, current: str, target: str):
        self.order_id = order_id
        self.current = current
        self.target = target
        if current == target:
            msg = f"Order {order_id} is already {current}"
        else:
            msg = f"Order {order_id} cannot move from {current} to {target}"
        super().__init__(msg)


class AlreadyFulfilledError(CanteenError):
    code = "ALREADY_FULFILLED"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order has already been fulfilled")


class AlreadyCancelledError(CanteenError):
    code = "ALREADY_CANCELLED"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order has been cancelled")


class VerificationError(CanteenError):
    """Base for pickup-token verification failures."""

    code = "VERIFICATION_FAILED"


class MalformedTokenError(VerificationError):
    code = "MALFORMED_TOKEN"

    def __init__(self, token: str):
        self.token = token
        super().__init__("Invalid QR code format")


class SignatureMismatchError(VerificationError):
    code = "SIGNATURE_MISMATCH"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Invalid QR code signature")


class MenuItemNotFoundError(CanteenError):
    code = "MENU_ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Food item not found: {item_id}")


class InvalidMenuItemError(CanteenError):
    """Raised when a menu item create/patch would break its invariants."""

    code = "INVALID_MENU_ITEM"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class MenuItemInUseError(CanteenError):
    code = "MENU_ITEM_IN_USE"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Food item {item_id} is referenced by existing orders")


class ReservationConflictError(CanteenError):
    """Raised when a stock batch kept conflicting with concurrent writers."""

    code = "RESERVATION_CONFLICT"

    def __init__(self, item_ids: list[str], attempts: int):
        self.item_ids = list(item_ids)
        self.attempts = attempts
        super().__init__(
            f"Stock update for {', '.join(self.item_ids)} conflicted {attempts} times, please retry"
        )


class OrderPersistenceError(CanteenError):
    """Raised when the order row could not be written after stock was reserved."""

    code = "ORDER_PERSISTENCE_FAILED"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Failed to store order {order_id}")
