"""
Order Ledger: журнал заказов на вкладке Orders.

The status cell is the single compare-and-swap point of the shop. Only the
first transition out of PENDING wins; every later attempt gets False and must
not produce any externally visible effect. A paid order is first CLAIMED and
finalized to PAID or PAID_NO_STOCK once the unit has been taken, so an order
that stopped half way stays visible as CLAIMED.
"""

import logging
from collections import Counter
from typing import List, Optional, Tuple

from errors import DuplicateOrderId, OrderNotFound
from ledger_store import LedgerStore, ensure_header, is_blank
from models import (
    COL_PAID_AT, COL_STATUS, ORDER_COLUMNS, Order, OrderStatus, is_order_row, now_iso,
)

logger = logging.getLogger(__name__)

FINAL_PAID_STATUSES = (OrderStatus.PAID, OrderStatus.PAID_NO_STOCK)


class OrderLedger:
    def __init__(self, store: LedgerStore, table: str = "Orders"):
        self.store = store
        self.table = table

    async def _scan(self) -> List[Tuple[int, Order]]:
        """(position, order) for every parseable data row."""
        rows = await self.store.read(self.table)
        result = []
        for position, cells in rows[1:]:
            if is_blank(cells):
                continue
            try:
                result.append((position, Order.from_row(cells)))
            except ValueError as e:
                logger.warning(f"⚠️ Пропущена некорректная строка {self.table}:{position}: {e}")
        return result

    async def _locate(self, order_id: str) -> Optional[Tuple[int, Order]]:
        for position, order in await self._scan():
            if order.order_id == order_id:
                return position, order
        return None

    async def create(self, order: Order) -> None:
        """Добавить заказ в статусе PENDING."""
        await ensure_header(self.store, self.table, ORDER_COLUMNS, is_order_row)
        if await self._locate(order.order_id) is not None:
            raise DuplicateOrderId(order.order_id)

        order.status = OrderStatus.PENDING
        order.paid_at = ""
        await self.store.append(self.table, order.to_row())
        logger.info(f"📝 Заказ {order.order_id} создан: {order.group_id} за {order.amount}, покупатель {order.buyer_id}")

    async def find(self, order_id: str) -> Optional[Order]:
        found = await self._locate(order_id)
        return found[1] if found else None

    async def transition(self, order_id: str, new_status: OrderStatus) -> bool:
        """✅ Первый переход из PENDING в терминальный статус.

        True only for the winner; False if the order already left PENDING.
        """
        if not new_status.is_terminal:
            raise ValueError(f"transition target must be terminal, got {new_status.value}")

        found = await self._locate(order_id)
        if found is None:
            raise OrderNotFound(order_id)
        position, order = found

        if order.status.is_terminal:
            logger.info(f"⏭️ Заказ {order_id} уже {order.status.value}, переход в {new_status.value} отклонён")
            return False

        won = await self.store.compare_and_set(
            self.table, position, COL_STATUS, OrderStatus.PENDING.value, new_status.value
        )
        if not won:
            logger.info(f"⏭️ Заказ {order_id}: статус изменился параллельно, переход в {new_status.value} отклонён")
            return False

        if new_status in (OrderStatus.CLAIMED, OrderStatus.PAID):
            await self.store.update(self.table, position, COL_PAID_AT, now_iso())
        logger.info(f"✅ Заказ {order_id}: PENDING → {new_status.value}")
        return True

    async def finalize(self, order_id: str, final_status: OrderStatus) -> bool:
        """CLAIMED → PAID / PAID_NO_STOCK, made by the winner of the gate."""
        if final_status not in FINAL_PAID_STATUSES:
            raise ValueError(f"finalize target must be PAID or PAID_NO_STOCK, got {final_status.value}")

        found = await self._locate(order_id)
        if found is None:
            raise OrderNotFound(order_id)
        position, _ = found
        done = await self.store.compare_and_set(
            self.table, position, COL_STATUS, OrderStatus.CLAIMED.value, final_status.value
        )
        if done:
            logger.info(f"✅ Заказ {order_id}: CLAIMED → {final_status.value}")
        else:
            logger.warning(f"⚠️ Заказ {order_id} не в статусе CLAIMED, {final_status.value} не записан")
        return done

    async def mark_no_stock(self, order_id: str) -> bool:
        return await self.finalize(order_id, OrderStatus.PAID_NO_STOCK)

    async def list_by_status(self, *statuses: OrderStatus) -> List[Order]:
        return [order for _, order in await self._scan() if order.status in statuses]

    async def count_completed(self) -> int:
        """Заказы, выданные покупателю (PAID)."""
        return len(await self.list_by_status(OrderStatus.PAID))

    async def daily_sales(self, days: int = 14) -> List[Tuple[str, int]]:
        """📊 (YYYY-MM-DD, completed orders) for the last ``days`` days that had sales."""
        per_day = Counter(
            (order.paid_at or order.created_at)[:10] or "unknown"
            for order in await self.list_by_status(OrderStatus.PAID)
        )
        return sorted(per_day.items())[-days:]
