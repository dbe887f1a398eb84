"""
Inventory Pool: каждая строка вкладки категории = одна единица товара.

Tab layout: row 1 holds the column labels, every non-blank row below it is a
unit. A unit is consumed by deleting its row, so it can never be counted or
picked again. Consumption is irreversible even if delivery fails afterwards.
"""

import logging
from typing import Dict, Iterable, Optional

from ledger_store import LedgerStore, is_blank
from models import StockItem

logger = logging.getLogger(__name__)


class InventoryPool:
    def __init__(self, store: LedgerStore):
        self.store = store

    async def count(self, group_id: str) -> int:
        """Number of unconsumed units. StoreUnavailable propagates."""
        rows = await self.store.read(group_id)
        return sum(1 for _, cells in rows[1:] if not is_blank(cells))

    async def counts(self, group_ids: Iterable[str]) -> Dict[str, int]:
        return {group_id: await self.count(group_id) for group_id in group_ids}

    async def take_one(self, group_id: str) -> Optional[StockItem]:
        """✅ Взять первую доступную единицу и удалить её строку.

        First-available-wins in table order. A row that changed under us
        (someone else consumed it) is skipped after a fresh read. Returns None
        when the pool is empty.
        """
        tried = set()
        while True:
            rows = await self.store.read(group_id)
            if not rows:
                logger.warning(f"⚠️ Вкладка {group_id} пуста или не найдена")
                return None
            header = rows[0][1]

            candidate = next(
                ((pos, cells) for pos, cells in rows[1:]
                 if not is_blank(cells) and (pos, tuple(cells)) not in tried),
                None,
            )
            if candidate is None:
                logger.warning(f"❌ Остаток {group_id} = 0, нечего выдавать")
                return None

            position, cells = candidate
            if await self.store.delete_if(group_id, position, cells):
                item = StockItem.from_row(group_id, position, header, cells)
                logger.info(f"📦 Единица {group_id} (строка {position}) выдана и удалена из пула")
                return item

            logger.info(f"🔁 Строка {group_id}:{position} изменилась, пробую следующую")
            tried.add((position, tuple(cells)))
