"""
Статусы товара в таблице: Свободен → Резерв → Продан (или обратно в Свободен).

Each transition re-reads the sheet, changes one row and writes it back.
There is no lock between the read and the write: two transitions on the same
row race and the later write wins. Set RESERVATION_CAS=1 to make the write
fail with RowConflictError instead when the row changed in between.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

import config
from sheets_handler import (
    COL_BUYER_NAME,
    COL_BUYER_PHONE,
    COL_BUYER_USERNAME,
    COL_ID,
    COL_QUANTITY,
    COL_STATUS,
    RowConflictError,
    RowStore,
    find_row,
)

logger = logging.getLogger(__name__)

STATUS_FREE = "Свободен"
STATUS_RESERVED = "Резерв"
STATUS_SOLD = "Продан"

CONTACT_TELEGRAM = "telegram"


async def _call_with_retry(func, *args, **kwargs):
    """Sheets call in a worker thread with exponential backoff; the last error propagates"""
    for attempt in range(config.MAX_RETRIES):
        try:
            # gspread блокирующий: держим event loop свободным
            return await asyncio.to_thread(func, *args, **kwargs)
        except RowConflictError:
            raise
        except Exception as e:
            if attempt >= config.MAX_RETRIES - 1:
                raise
            delay = config.RETRY_DELAY * (config.RETRY_BACKOFF ** attempt)
            logger.warning(f"⚠️ Ошибка Google Sheets (попытка {attempt + 1}/{config.MAX_RETRIES}): {e}. "
                           f"Повтор через {delay:.1f}с")
            await asyncio.sleep(delay)


def _locate_and_write(store: RowStore, product_id: str,
                      change: Callable[[List[str]], None]) -> Optional[List[str]]:
    position, row = store.locate(product_id)
    if position is None:
        return None

    updated = list(row)
    change(updated)

    expected = row if config.RESERVATION_CAS else None
    store.update_row(position, updated, expected=expected)
    return updated


async def _transition(store: RowStore, product_id: str, change: Callable[[List[str]], None],
                      action: str) -> bool:
    # Повторяем поиск вместе с записью: за время паузы строки могли сдвинуться
    updated = await _call_with_retry(_locate_and_write, store, product_id, change)
    if updated is None:
        logger.warning(f"⚠️ Не найден товар ID: {product_id} ({action})")
        return False

    logger.info(f"✓ {action}: товар {product_id} → {updated[COL_STATUS]}")
    return True


async def reserve_product(store: RowStore, product_id: str, buyer_name: str, buyer_phone: str,
                          buyer_username: Optional[str] = None) -> bool:
    """Свободен → Резерв, записываем контакты покупателя"""
    def change(row):
        row[COL_STATUS] = STATUS_RESERVED
        row[COL_BUYER_NAME] = buyer_name or ""
        row[COL_BUYER_PHONE] = buyer_phone or ""
        # username только если покупатель выбрал связь через Telegram
        if buyer_username is not None:
            row[COL_BUYER_USERNAME] = buyer_username

    return await _transition(store, product_id, change, "Резерв")


async def reserve_order_items(store: RowStore, order) -> Tuple[List[str], List[str]]:
    """
    Reserve every line item of an order, in order.

    Items whose ID is not in the sheet are skipped and reported in the second
    list; they never stop the rest of the order.
    """
    username = None
    if order.contact_method == CONTACT_TELEGRAM:
        username = order.tg_username or ""

    reserved, missing = [], []
    for item in order.items:
        ok = await reserve_product(store, item.id, order.name, order.phone, username)
        (reserved if ok else missing).append(item.id)
    return reserved, missing


async def approve_product(store: RowStore, product_id: str) -> bool:
    """Резерв → Продан. Данные покупателя остаются в таблице."""
    def change(row):
        row[COL_STATUS] = STATUS_SOLD
        row[COL_QUANTITY] = "0"

    return await _transition(store, product_id, change, "Продан")


async def release_product(store: RowStore, product_id: str) -> bool:
    """Резерв → Свободен, контакты покупателя очищаются"""
    def change(row):
        row[COL_STATUS] = STATUS_FREE
        row[COL_BUYER_NAME] = ""
        row[COL_BUYER_PHONE] = ""
        row[COL_BUYER_USERNAME] = ""

    return await _transition(store, product_id, change, "Резерв снят")


async def delete_product(store: RowStore, product_id: str) -> bool:
    """Remove the product row entirely.

    The position is taken from a listing fetched right here, not from the
    listing the admin picked from: rows above may have been deleted since.
    """
    rows = await _call_with_retry(store.list_rows)
    position = find_row(rows, product_id)
    if position is None:
        logger.warning(f"⚠️ Не найден товар ID для удаления: {product_id}")
        return False

    await asyncio.to_thread(store.delete_row_at, position)
    logger.info(f"🗑 Товар {product_id} удалён")
    return True


async def list_products(store: RowStore) -> List[List[str]]:
    rows = await _call_with_retry(store.list_rows)
    return [row for row in rows if str(row[COL_ID]).strip()]


async def list_reserved(store: RowStore) -> List[List[str]]:
    rows = await list_products(store)
    return [row for row in rows if row[COL_STATUS] == STATUS_RESERVED]
