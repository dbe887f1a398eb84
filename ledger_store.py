"""
Ledger Store: табличное хранилище строк (Google Sheets или SQLite).

Every table starts with a header row. Rows are addressed by ``position``:
the 1-based sheet row number for Google Sheets, a stable row id for SQLite.
There are no transactions across calls; the only guarded operations are the
single-row ``compare_and_set`` and ``delete_if``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Tuple, Type, TypeVar

import config
from errors import StoreUnavailable

logger = logging.getLogger(__name__)

Row = Tuple[int, List[str]]
T = TypeVar('T')


class LedgerStore:
    """Interface shared by GoogleSheetsHandler and SqliteLedgerStore."""

    async def read(self, table: str) -> List[Row]:
        """All rows of ``table`` (header included) in stable order. Missing table -> []."""
        raise NotImplementedError

    async def append(self, table: str, cells: List[str]) -> None:
        raise NotImplementedError

    async def prepend(self, table: str, cells: List[str]) -> None:
        """Insert ``cells`` above every existing row of ``table``."""
        raise NotImplementedError

    async def update(self, table: str, position: int, column: int, value: str) -> None:
        raise NotImplementedError

    async def delete(self, table: str, position: int) -> None:
        raise NotImplementedError

    async def compare_and_set(self, table: str, position: int, column: int,
                              expected: str, value: str) -> bool:
        """Write ``value`` only if the cell still holds ``expected``."""
        raise NotImplementedError

    async def delete_if(self, table: str, position: int, expected_cells: List[str]) -> bool:
        """Delete the row only if it still holds ``expected_cells``."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


def same_cells(a: List[str], b: List[str]) -> bool:
    """Row equality ignoring trailing blank cells (Sheets trims them, SQLite doesn't)."""
    def norm(cells):
        cells = [str(c) for c in cells]
        while cells and not cells[-1].strip():
            cells.pop()
        return cells
    return norm(a) == norm(b)


def is_blank(cells: List[str]) -> bool:
    return not any(str(c).strip() for c in cells)


async def ensure_header(store: LedgerStore, table: str, columns: List[str],
                        is_record: Callable[[List[str]], bool]) -> None:
    """Make row 1 of ``table`` hold ``columns``.

    A wrong header is overwritten in place, but when row 1 is actually a data
    record (``is_record``) the header is inserted above it so the record survives.
    """
    rows = await store.read(table)
    if not rows:
        await store.append(table, list(columns))
        return
    position, first = rows[0]
    if [str(c).strip() for c in first[:len(columns)]] == list(columns):
        return
    if is_record(first):
        logger.warning(f"⚠️ Во вкладке {table} нет заголовка, вставляю его над данными")
        await store.prepend(table, list(columns))
        return
    logger.warning(f"⚠️ Заголовок вкладки {table} некорректен, перезаписываю")
    for column, name in enumerate(columns, start=1):
        await store.update(table, position, column, name)


async def call_with_retry(
    what: str,
    func: Callable[[], Awaitable[T]],
    retry_on: Tuple[Type[BaseException], ...],
    max_retries: int = None,
    delay: float = None,
    backoff: float = None,
) -> T:
    """✅ Выполнить операцию с хранилищем с повторными попытками.

    Transient errors listed in ``retry_on`` are retried with exponential delay;
    after the last attempt they surface as StoreUnavailable.
    """
    max_retries = config.MAX_RETRIES if max_retries is None else max_retries
    delay = config.RETRY_DELAY if delay is None else delay
    backoff = config.RETRY_BACKOFF if backoff is None else backoff

    for attempt in range(max_retries):
        try:
            return await func()
        except retry_on as e:
            logger.error(f"❌ {what}: ошибка (попытка {attempt + 1}/{max_retries}): {e}")
            if attempt < max_retries - 1:
                wait = delay * (backoff ** attempt)
                logger.info(f"⏳ Ожидание {wait:.1f}с перед повтором...")
                await asyncio.sleep(wait)
                continue
            raise StoreUnavailable(f"{what}: {e}") from e
    raise StoreUnavailable(f"{what}: no attempts made")
