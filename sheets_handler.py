import asyncio
import logging
import gspread
from gspread.exceptions import APIError, WorksheetNotFound
from gspread.utils import rowcol_to_a1
from oauth2client.service_account import ServiceAccountCredentials
from typing import Dict, List, Optional
import os

import config
from errors import StoreUnavailable
from ledger_store import LedgerStore, Row, call_with_retry, same_cells

logger = logging.getLogger(__name__)


class GoogleSheetsHandler(LedgerStore):
    """
    Ledger Store over Google Sheets using gspread.

    One tab per table. Positions are 1-based sheet row numbers, so deleting a
    row shifts every row below it. The conditional operations are
    read-then-write: a per-tab asyncio.Lock makes them safe inside this
    process only. Two bot processes sharing one spreadsheet can still race
    (Sheets has no compare-and-swap); use STORE_BACKEND=sqlite for that.
    """
    def __init__(self, sheet_id: Optional[str] = None, creds_file: Optional[str] = None):
        self.scope = [
            "https://spreadsheets.google.com/feeds",
            "https://www.googleapis.com/auth/spreadsheets",
            "https://www.googleapis.com/auth/drive.file",
            "https://www.googleapis.com/auth/drive"
        ]
        self.creds_file = creds_file or config.GOOGLE_CREDS_FILE
        self.sheet_id = sheet_id or config.GOOGLE_SHEET_ID
        self.client = None
        self.sheet = None
        self._worksheets: Dict[str, gspread.Worksheet] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        self._connect()

    def _connect(self):
        """Connect to Google Sheets"""
        try:
            if not os.path.exists(self.creds_file):
                raise FileNotFoundError(f"Файл {self.creds_file} не найден!")

            self.creds = ServiceAccountCredentials.from_json_keyfile_name(self.creds_file, self.scope)
            self.client = gspread.authorize(self.creds)

            if not self.sheet_id:
                raise ValueError("GOOGLE_SHEET_ID не установлен в .env")
            self.sheet = self.client.open_by_key(self.sheet_id)

            logger.info("✅ Успешное подключение к Google Sheets")

        except Exception as e:
            logger.error(f"❌ Ошибка подключения к Google Sheets: {e}")
            raise

    def _lock(self, table: str) -> asyncio.Lock:
        if table not in self._locks:
            self._locks[table] = asyncio.Lock()
        return self._locks[table]

    def _worksheet(self, table: str) -> Optional[gspread.Worksheet]:
        """Worksheet by tab title, cached. None if the tab does not exist."""
        if table not in self._worksheets:
            try:
                self._worksheets[table] = self.sheet.worksheet(table)
            except WorksheetNotFound:
                return None
        return self._worksheets[table]

    async def _call(self, what: str, func, *args):
        """Run a blocking gspread call in a thread, retrying transient API errors."""
        async def attempt():
            return await asyncio.to_thread(func, *args)
        try:
            return await call_with_retry(what, attempt, retry_on=(APIError, OSError))
        except StoreUnavailable:
            raise
        except WorksheetNotFound as e:
            raise StoreUnavailable(f"{what}: вкладка не найдена ({e})") from e

    # ------------------------------------------------------------------
    # Ledger Store API
    # ------------------------------------------------------------------

    async def read(self, table: str) -> List[Row]:
        def op():
            worksheet = self._worksheet(table)
            if worksheet is None:
                return []
            return worksheet.get_all_values()

        values = await self._call(f"read {table}", op)
        return [(i + 1, [str(c) for c in row]) for i, row in enumerate(values)]

    async def append(self, table: str, cells: List[str]) -> None:
        def op():
            worksheet = self._worksheet(table)
            if worksheet is None:
                worksheet = self.sheet.add_worksheet(title=table, rows=1000, cols=max(len(cells), 1))
                self._worksheets[table] = worksheet

            # Find the next available row; explicit range forces correct placement
            next_row = len(worksheet.get_all_values()) + 1
            target_range = f"A{next_row}:{rowcol_to_a1(next_row, max(len(cells), 1))}"
            logger.info(f"📝 Writing {table} row to {target_range}")
            worksheet.update(range_name=target_range, values=[cells], value_input_option='RAW')

        async with self._lock(table):
            await self._call(f"append {table}", op)

    async def prepend(self, table: str, cells: List[str]) -> None:
        def op():
            self._require(table).insert_row(cells, 1, value_input_option='RAW')

        async with self._lock(table):
            await self._call(f"prepend {table}", op)

    async def update(self, table: str, position: int, column: int, value: str) -> None:
        def op():
            self._require(table).update_cell(position, column, value)

        async with self._lock(table):
            await self._call(f"update {table}:{position}", op)

    async def delete(self, table: str, position: int) -> None:
        def op():
            self._require(table).delete_rows(position)

        async with self._lock(table):
            await self._call(f"delete {table}:{position}", op)

    async def compare_and_set(self, table: str, position: int, column: int,
                              expected: str, value: str) -> bool:
        def op():
            worksheet = self._require(table)
            current = worksheet.cell(position, column).value
            if str(current or "") != str(expected):
                return False
            worksheet.update_cell(position, column, value)
            return True

        async with self._lock(table):
            return await self._call(f"compare_and_set {table}:{position}", op)

    async def delete_if(self, table: str, position: int, expected_cells: List[str]) -> bool:
        def op():
            worksheet = self._require(table)
            current = worksheet.row_values(position)
            if not current or not same_cells(current, expected_cells):
                return False
            worksheet.delete_rows(position)
            return True

        async with self._lock(table):
            return await self._call(f"delete_if {table}:{position}", op)

    def _require(self, table: str) -> gspread.Worksheet:
        worksheet = self._worksheet(table)
        if worksheet is None:
            raise WorksheetNotFound(table)
        return worksheet
