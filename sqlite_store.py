"""
SQLite-хранилище (aiosqlite) с атомарными однострочными операциями.

Same "table of rows" model as the spreadsheet, kept in one ``ledger_rows``
table. Positions are autoincrement ids, so deleting a row never shifts the
others. ``compare_and_set`` and ``delete_if`` run inside ``BEGIN IMMEDIATE``,
which makes them real compare-and-swap operations even across processes.
"""

import asyncio
import json
import logging
import sqlite3
from typing import Iterable, List, Optional

import aiosqlite

from errors import StoreUnavailable
from ledger_store import LedgerStore, Row, call_with_retry, same_cells

logger = logging.getLogger(__name__)

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS ledger_rows (
        pos INTEGER PRIMARY KEY AUTOINCREMENT,
        tbl TEXT NOT NULL,
        cells TEXT NOT NULL
    )
'''
INDEX = 'CREATE INDEX IF NOT EXISTS idx_ledger_rows_tbl ON ledger_rows (tbl, pos)'


class SqliteLedgerStore(LedgerStore):
    def __init__(self, path: str = 'shop.db'):
        self.path = path
        self.db: Optional[aiosqlite.Connection] = None
        # one connection: transactions on it must not interleave
        self._lock = asyncio.Lock()

    async def open(self) -> "SqliteLedgerStore":
        """Инициализация базы данных: создание таблицы, если она не существует."""
        try:
            self.db = await aiosqlite.connect(self.path, isolation_level=None)
            await self.db.execute('PRAGMA busy_timeout = 5000')
            await self.db.execute(SCHEMA)
            await self.db.execute(INDEX)
        except sqlite3.Error as e:
            logger.error(f"❌ Ошибка подключения к SQLite {self.path}: {e}")
            raise StoreUnavailable(f"sqlite open: {e}") from e
        logger.info(f"✅ SQLite хранилище готово: {self.path}")
        return self

    async def close(self) -> None:
        if self.db is not None:
            await self.db.close()
            self.db = None

    async def _run(self, what: str, func):
        if self.db is None:
            raise StoreUnavailable("sqlite store is not open")
        try:
            return await call_with_retry(what, func, retry_on=(sqlite3.OperationalError,))
        except sqlite3.Error as e:
            raise StoreUnavailable(f"{what}: {e}") from e

    # ------------------------------------------------------------------
    # Ledger Store API
    # ------------------------------------------------------------------

    async def read(self, table: str) -> List[Row]:
        async def op():
            async with self.db.execute(
                'SELECT pos, cells FROM ledger_rows WHERE tbl = ? ORDER BY pos', (table,)
            ) as cursor:
                return [(pos, json.loads(cells)) for pos, cells in await cursor.fetchall()]
        return await self._run(f"read {table}", op)

    async def append(self, table: str, cells: List[str]) -> None:
        async def op():
            async with self._lock:
                await self.db.execute(
                    'INSERT INTO ledger_rows (tbl, cells) VALUES (?, ?)',
                    (table, _dump(cells)),
                )
        await self._run(f"append {table}", op)

    async def prepend(self, table: str, cells: List[str]) -> None:
        async def op():
            async with self._lock:
                # below the global minimum, so the id is free and sorts first in its table
                await self.db.execute(
                    'INSERT INTO ledger_rows (pos, tbl, cells) '
                    'VALUES ((SELECT COALESCE(MIN(pos), 1) - 1 FROM ledger_rows), ?, ?)',
                    (table, _dump(cells)),
                )
        await self._run(f"prepend {table}", op)

    async def update(self, table: str, position: int, column: int, value: str) -> None:
        async def op():
            async with self._lock:
                await self._begin()
                try:
                    cells = await self._get(table, position)
                    if cells is not None:
                        await self._put(position, _set_cell(cells, column, value))
                    await self.db.commit()
                except BaseException:
                    await self.db.rollback()
                    raise
        await self._run(f"update {table}:{position}", op)

    async def delete(self, table: str, position: int) -> None:
        async def op():
            async with self._lock:
                await self.db.execute(
                    'DELETE FROM ledger_rows WHERE tbl = ? AND pos = ?', (table, position)
                )
        await self._run(f"delete {table}:{position}", op)

    async def compare_and_set(self, table: str, position: int, column: int,
                              expected: str, value: str) -> bool:
        async def op():
            async with self._lock:
                await self._begin()
                try:
                    cells = await self._get(table, position)
                    current = cells[column - 1] if cells is not None and column <= len(cells) else None
                    if current is None or str(current) != str(expected):
                        await self.db.rollback()
                        return False
                    await self._put(position, _set_cell(cells, column, value))
                    await self.db.commit()
                    return True
                except BaseException:
                    await self.db.rollback()
                    raise
        return await self._run(f"compare_and_set {table}:{position}", op)

    async def delete_if(self, table: str, position: int, expected_cells: List[str]) -> bool:
        async def op():
            async with self._lock:
                await self._begin()
                try:
                    cells = await self._get(table, position)
                    if cells is None or not same_cells(cells, expected_cells):
                        await self.db.rollback()
                        return False
                    await self.db.execute('DELETE FROM ledger_rows WHERE pos = ?', (position,))
                    await self.db.commit()
                    return True
                except BaseException:
                    await self.db.rollback()
                    raise
        return await self._run(f"delete_if {table}:{position}", op)

    # ------------------------------------------------------------------
    # Operator helpers
    # ------------------------------------------------------------------

    async def seed(self, table: str, rows: Iterable[List[str]]) -> None:
        """Заполнить вкладку строками (первая строка - заголовок)."""
        for cells in rows:
            await self.append(table, [str(c) for c in cells])

    # ------------------------------------------------------------------

    async def _begin(self) -> None:
        await self.db.execute('BEGIN IMMEDIATE')

    async def _get(self, table: str, position: int) -> Optional[List[str]]:
        async with self.db.execute(
            'SELECT cells FROM ledger_rows WHERE tbl = ? AND pos = ?', (table, position)
        ) as cursor:
            row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def _put(self, position: int, cells: List[str]) -> None:
        await self.db.execute(
            'UPDATE ledger_rows SET cells = ? WHERE pos = ?', (_dump(cells), position)
        )


def _dump(cells: List[str]) -> str:
    return json.dumps([str(c) for c in cells], ensure_ascii=False)


def _set_cell(cells: List[str], column: int, value: str) -> List[str]:
    cells = list(cells) + [""] * max(0, column - len(cells))
    cells[column - 1] = str(value)
    return cells
