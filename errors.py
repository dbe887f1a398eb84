"""
Исключения магазина.

StoreUnavailable is transient and must never be read as "no stock" or
"order not found". The caller-logic errors are turned into user messages at
the handler boundary; AmountMismatch always ends with an admin alert.
"""


class ShopError(Exception):
    """Base class for all shop errors."""


class StoreUnavailable(ShopError):
    """The ledger store (Google Sheets / SQLite) could not be reached."""


class DuplicateOrderId(ShopError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} already exists")
        self.order_id = order_id


class OrderNotFound(ShopError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class NotOwner(ShopError):
    def __init__(self, order_id: str, requester_id: int):
        super().__init__(f"User {requester_id} does not own order {order_id}")
        self.order_id = order_id
        self.requester_id = requester_id


class AdapterError(ShopError):
    """Payment gateway unreachable or answered with something we can't parse."""


class AmountMismatch(ShopError):
    def __init__(self, order_id: str, expected: int, reported: int):
        super().__init__(
            f"Order {order_id}: expected amount {expected}, gateway reported {reported}"
        )
        self.order_id = order_id
        self.expected = expected
        self.reported = reported
