import copy
import logging
import gspread
from oauth2client.service_account import ServiceAccountCredentials
from typing import List, Optional, Tuple
import os

import config

logger = logging.getLogger(__name__)

# Колонки листа товаров (индексы с нуля)
COL_ID = 0              # A
COL_NAME = 1            # B
COL_PRICE = 2           # C
COL_CATEGORY = 3        # D
COL_BRAND = 4           # E
COL_CONDITION = 5       # F
COL_CAPACITY = 6        # G
COL_PHOTOS = 7          # H, URL через пробел
COL_DESCRIPTION = 8     # I
COL_COLOR = 9           # J
COL_QUANTITY = 10       # K
COL_STATUS = 11         # L
COL_BUYER_NAME = 12     # M
COL_BUYER_PHONE = 13    # N
COL_BUYER_USERNAME = 14 # O

ROW_WIDTH = 15
LAST_COLUMN = "O"


class RowConflictError(Exception):
    """Строку изменили между чтением и записью"""


def pad_row(row) -> List[str]:
    """Приводит строку к 15 ячейкам-строкам (A..O)"""
    cells = ["" if c is None else str(c) for c in list(row)[:ROW_WIDTH]]
    return cells + [""] * (ROW_WIDTH - len(cells))


def find_row(rows: List[List[str]], product_id: str) -> Optional[int]:
    """Линейный поиск позиции строки по ID (колонка A)"""
    product_id = str(product_id).strip()
    if not product_id:
        return None
    for index, row in enumerate(rows):
        if row and str(row[COL_ID]).strip() == product_id:
            return index
    return None


class RowStore:
    """
    Row-oriented access to the product sheet.

    Positions are 0-based indexes into ``list_rows()`` (header rows excluded).
    Every call goes to the backing store; nothing is cached, so two concurrent
    read-modify-write cycles on the same row end with the last write winning.
    """

    def list_rows(self) -> List[List[str]]:
        raise NotImplementedError

    def append_row(self, row: List) -> None:
        raise NotImplementedError

    def update_row(self, position: int, row: List, expected: Optional[List] = None) -> None:
        raise NotImplementedError

    def delete_row_at(self, position: int) -> None:
        raise NotImplementedError

    def locate(self, product_id: str) -> Tuple[Optional[int], Optional[List[str]]]:
        """Find a row by product ID. Subclasses may swap the scan for an index."""
        rows = self.list_rows()
        index = find_row(rows, product_id)
        if index is None:
            return None, None
        return index, rows[index]


class GoogleSheetsHandler(RowStore):
    """
    Handler for Google Sheets interaction using gspread.
    """
    def __init__(self, sheet_id: str = None, creds_file: str = None,
                 sheet_name: str = None, header_rows: int = None):
        self.scope = [
            "https://spreadsheets.google.com/feeds",
            "https://www.googleapis.com/auth/spreadsheets",
            "https://www.googleapis.com/auth/drive.file",
            "https://www.googleapis.com/auth/drive"
        ]
        self.sheet_id = sheet_id or config.GOOGLE_SHEET_ID
        self.creds_file = creds_file or config.GOOGLE_CREDS_FILE
        self.SHEET_PRODUCTS = sheet_name or config.SHEET_NAME
        self.header_rows = config.SHEET_HEADER_ROWS if header_rows is None else header_rows
        self.client = None
        self.sheet = None

        self._connect()

    def _connect(self):
        """Connect to Google Sheets"""
        try:
            if not os.path.exists(self.creds_file):
                raise FileNotFoundError(f"Файл {self.creds_file} не найден!")

            if not self.sheet_id:
                raise ValueError("GOOGLE_SHEET_ID не установлен в .env")

            self.creds = ServiceAccountCredentials.from_json_keyfile_name(self.creds_file, self.scope)
            self.client = gspread.authorize(self.creds)
            self.sheet = self.client.open_by_key(self.sheet_id)

            logger.info("✅ Успешное подключение к Google Sheets")

        except Exception as e:
            logger.error(f"❌ Ошибка подключения к Google Sheets: {e}")
            raise

    def _worksheet(self):
        return self.sheet.worksheet(self.SHEET_PRODUCTS)

    def _sheet_row(self, position: int) -> int:
        # 1-based номер строки в таблице с учетом заголовка
        return position + self.header_rows + 1

    def list_rows(self) -> List[List[str]]:
        """All product rows below the header, padded to A..O"""
        try:
            all_values = self._worksheet().get_all_values()
            return [pad_row(row) for row in all_values[self.header_rows:]]
        except Exception as e:
            logger.error(f"❌ Ошибка чтения товаров: {e}")
            raise

    def append_row(self, row: List) -> None:
        """Add a product row after the last filled cell of column A"""
        try:
            worksheet = self._worksheet()

            # Следующая свободная строка по колонке A
            next_row = len(worksheet.col_values(1)) + 1
            target_range = f"A{next_row}:{LAST_COLUMN}{next_row}"

            logger.info(f"📝 Writing product to {target_range}")
            worksheet.update(range_name=target_range, values=[pad_row(row)],
                             value_input_option="USER_ENTERED")
        except Exception as e:
            logger.error(f"❌ Ошибка добавления товара: {e}")
            raise

    def update_row(self, position: int, row: List, expected: Optional[List] = None) -> None:
        """Overwrite A..O of one row; with ``expected`` set, refuse if the row changed"""
        worksheet = self._worksheet()
        row_number = self._sheet_row(position)

        if expected is not None:
            current = pad_row(worksheet.row_values(row_number))
            if current != pad_row(expected):
                logger.warning(f"⚠️ Строка {row_number} изменилась до записи")
                raise RowConflictError(f"Строка {row_number} была изменена")

        target_range = f"A{row_number}:{LAST_COLUMN}{row_number}"
        logger.info(f"📝 Writing row {target_range}")
        try:
            worksheet.update(range_name=target_range, values=[pad_row(row)],
                             value_input_option="USER_ENTERED")
        except Exception as e:
            logger.error(f"❌ Ошибка обновления строки {row_number}: {e}")
            raise

    def delete_row_at(self, position: int) -> None:
        row_number = self._sheet_row(position)
        try:
            self._worksheet().delete_rows(row_number)
            logger.info(f"🗑 Строка {row_number} удалена")
        except Exception as e:
            logger.error(f"❌ Ошибка удаления строки {row_number}: {e}")
            raise


class LocalRowStore(RowStore):
    """Резервное хранилище в памяти (если Google Sheets недоступна)"""

    def __init__(self, rows: Optional[List[List]] = None):
        self.rows = [pad_row(row) for row in (rows or [])]

    def list_rows(self) -> List[List[str]]:
        return copy.deepcopy(self.rows)

    def append_row(self, row: List) -> None:
        self.rows.append(pad_row(row))

    def update_row(self, position: int, row: List, expected: Optional[List] = None) -> None:
        if position >= len(self.rows):
            raise IndexError(f"Нет строки с позицией {position}")
        if expected is not None and self.rows[position] != pad_row(expected):
            raise RowConflictError(f"Строка {position} была изменена")
        self.rows[position] = pad_row(row)

    def delete_row_at(self, position: int) -> None:
        del self.rows[position]
