"""
Модели данных: единица товара, заказ, счёт и нормализованное уведомление об оплате.
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

# Orders tab layout
ORDER_COLUMNS = ["order_id", "buyer_id", "group_id", "amount", "status", "created_at", "paid_at"]
COL_STATUS = ORDER_COLUMNS.index("status") + 1
COL_PAID_AT = ORDER_COLUMNS.index("paid_at") + 1

# Gateway status that means "money received"
PAYMENT_COMPLETED = "completed"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    # payment accepted, unit not yet taken: finalized to PAID or PAID_NO_STOCK
    CLAIMED = "CLAIMED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    PAID_NO_STOCK = "PAID_NO_STOCK"

    @property
    def is_terminal(self) -> bool:
        """Out of PENDING: the one-shot gate has been passed."""
        return self is not OrderStatus.PENDING


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def is_order_row(cells: List[str]) -> bool:
    """Row 1 holding real order data rather than a (broken) header."""
    try:
        return bool(Order.from_row(cells).order_id)
    except ValueError:
        return False


def new_order_id(prefix: str = "INV") -> str:
    """INV-<epoch millis>-<6 hex>: timestamp plus random suffix, collision resistant."""
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def parse_amount(value) -> int:
    """'9 000', '9000.00', 9000 -> 9000. Raises ValueError on garbage."""
    text = str(value).replace(" ", "").replace(",", "").strip()
    if not text:
        raise ValueError("empty amount")
    return int(float(text))


@dataclass
class StockItem:
    """One sellable unit: a single data row of a category tab."""
    group_id: str
    position: int
    payload: List[Tuple[str, str]] = field(default_factory=list)

    @classmethod
    def from_row(cls, group_id: str, position: int, header: List[str], cells: List[str]) -> "StockItem":
        payload = []
        for i, label in enumerate(header):
            label = str(label).strip()
            value = str(cells[i]).strip() if i < len(cells) else ""
            if label and value:
                payload.append((label, value))
        return cls(group_id=group_id, position=position, payload=payload)


@dataclass
class Order:
    order_id: str
    buyer_id: int
    group_id: str
    amount: int
    status: OrderStatus = OrderStatus.PENDING
    created_at: str = field(default_factory=now_iso)
    paid_at: str = ""

    def to_row(self) -> List[str]:
        return [
            self.order_id,
            str(self.buyer_id),
            self.group_id,
            str(self.amount),
            self.status.value,
            self.created_at,
            self.paid_at,
        ]

    @classmethod
    def from_row(cls, cells: List[str]) -> "Order":
        cells = list(cells) + [""] * (len(ORDER_COLUMNS) - len(cells))
        return cls(
            order_id=str(cells[0]).strip(),
            buyer_id=int(str(cells[1]).strip() or 0),
            group_id=str(cells[2]).strip(),
            amount=parse_amount(cells[3] or 0),
            status=OrderStatus(str(cells[4]).strip().upper() or OrderStatus.PENDING.value),
            created_at=str(cells[5]).strip(),
            paid_at=str(cells[6]).strip(),
        )


@dataclass
class Invoice:
    order_id: str
    amount: int
    pay_code: Optional[str] = None
    pay_url: Optional[str] = None
    expires_at: Optional[str] = None
    payment_method: str = "qris"


@dataclass
class PaymentNotification:
    """Gateway callback normalized to {order_id, amount, status}."""
    order_id: str
    amount: int
    status: str

    @property
    def is_completed(self) -> bool:
        return self.status == PAYMENT_COMPLETED
