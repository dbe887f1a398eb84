"""
Реестр пользователей бота: вкладка Users (chat_id, first_seen, last_seen).
"""

import logging
from typing import List

from ledger_store import LedgerStore, ensure_header, is_blank
from models import now_iso

logger = logging.getLogger(__name__)

USER_COLUMNS = ["chat_id", "first_seen", "last_seen"]
COL_LAST_SEEN = USER_COLUMNS.index("last_seen") + 1


def is_user_row(cells: List[str]) -> bool:
    return bool(cells) and str(cells[0]).strip().lstrip('-').isdigit()


class UserRegistry:
    def __init__(self, store: LedgerStore, table: str = "Users"):
        self.store = store
        self.table = table

    async def touch(self, chat_id: int) -> bool:
        """✅ Записать пользователя (или обновить last_seen). True для нового."""
        await ensure_header(self.store, self.table, USER_COLUMNS, is_user_row)
        for position, cells in (await self.store.read(self.table))[1:]:
            if cells and str(cells[0]).strip() == str(chat_id):
                await self.store.update(self.table, position, COL_LAST_SEEN, now_iso())
                return False

        seen = now_iso()
        await self.store.append(self.table, [str(chat_id), seen, seen])
        logger.info(f"👤 Новый пользователь {chat_id}")
        return True

    async def total(self) -> int:
        """Число уникальных chat_id (дубли от параллельных /start не считаются)."""
        rows = await self.store.read(self.table)
        return len({str(cells[0]).strip() for _, cells in rows[1:] if not is_blank(cells) and is_user_row(cells)})
