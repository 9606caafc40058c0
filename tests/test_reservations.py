import asyncio
import time

import pytest
from unittest.mock import MagicMock, patch

from orders import Order
from reservations import (
    STATUS_FREE,
    STATUS_RESERVED,
    STATUS_SOLD,
    approve_product,
    delete_product,
    list_reserved,
    release_product,
    reserve_order_items,
    reserve_product,
)
from sheets_handler import (
    COL_BUYER_NAME,
    COL_BUYER_PHONE,
    COL_BUYER_USERNAME,
    COL_ID,
    COL_QUANTITY,
    COL_STATUS,
    LocalRowStore,
    RowConflictError,
    pad_row,
)


def _row(product_id, status=STATUS_FREE, buyer=("", "", "")):
    return pad_row([product_id, f"Товар {product_id}", "500", "Phones", "", "New", "128GB",
                    "https://x/1.jpg", "desc", "Black", "1", status, *buyer])


@pytest.fixture
def store():
    return LocalRowStore([
        _row("1700000000000"),
        _row("1700000000001", STATUS_RESERVED, ("B", "+2", "b")),
    ])


@pytest.fixture(autouse=True)
def no_retry_delay():
    with patch('config.RETRY_DELAY', 0):
        yield


# ============================================================================
# Резерв
# ============================================================================

@pytest.mark.asyncio
async def test_order_example_reserves_row_with_buyer(store):
    """Пример из заказа mini-app: товар уходит в резерв с контактами"""
    order = Order.from_payload({
        "items": [{"id": "1700000000000", "qty": 2, "price": 500}],
        "total": 1000,
        "name": "A",
        "phone": "+1",
        "contactMethod": "telegram",
        "tg_username": "a",
    })

    reserved, missing = await reserve_order_items(store, order)

    assert reserved == ["1700000000000"]
    assert missing == []
    row = store.list_rows()[0]
    assert row[COL_STATUS] == STATUS_RESERVED
    assert row[COL_BUYER_NAME] == "A"
    assert row[COL_BUYER_PHONE] == "+1"
    assert row[COL_BUYER_USERNAME] == "a"


@pytest.mark.asyncio
async def test_username_not_written_for_phone_contact():
    store = LocalRowStore([_row("1", buyer=("", "", "old"))])
    order = Order.from_payload({
        "items": [{"id": "1", "qty": 1, "price": 10}],
        "name": "A", "phone": "+1", "contactMethod": "phone", "tg_username": "a",
    })

    await reserve_order_items(store, order)

    row = store.list_rows()[0]
    assert row[COL_STATUS] == STATUS_RESERVED
    assert row[COL_BUYER_USERNAME] == "old"


@pytest.mark.asyncio
async def test_missing_items_are_skipped_and_rest_processed(store):
    order = Order.from_payload({
        "items": [{"id": "404", "qty": 1, "price": 1}, {"id": "1700000000000", "qty": 1, "price": 1}],
        "name": "A", "phone": "+1",
    })

    reserved, missing = await reserve_order_items(store, order)

    assert missing == ["404"]
    assert reserved == ["1700000000000"]


@pytest.mark.asyncio
async def test_unknown_id_leaves_store_untouched(store):
    before = store.list_rows()

    assert await reserve_product(store, "404", "A", "+1") is False
    assert await approve_product(store, "404") is False
    assert await release_product(store, "404") is False
    assert await delete_product(store, "404") is False

    assert store.list_rows() == before


# ============================================================================
# Подтверждение / отмена
# ============================================================================

@pytest.mark.asyncio
async def test_approve_marks_sold_and_keeps_buyer(store):
    assert await approve_product(store, "1700000000001") is True

    row = store.list_rows()[1]
    assert row[COL_STATUS] == STATUS_SOLD
    assert row[COL_QUANTITY] == "0"
    assert row[COL_BUYER_NAME] == "B"
    assert row[COL_BUYER_PHONE] == "+2"


@pytest.mark.asyncio
async def test_approve_is_idempotent(store):
    await approve_product(store, "1700000000001")
    once = store.list_rows()
    await approve_product(store, "1700000000001")
    assert store.list_rows() == once


@pytest.mark.asyncio
async def test_release_clears_buyer_and_is_idempotent(store):
    assert await release_product(store, "1700000000001") is True
    once = store.list_rows()

    row = once[1]
    assert row[COL_STATUS] == STATUS_FREE
    assert row[COL_BUYER_NAME] == row[COL_BUYER_PHONE] == row[COL_BUYER_USERNAME] == ""

    await release_product(store, "1700000000001")
    assert store.list_rows() == once


@pytest.mark.asyncio
async def test_list_reserved(store):
    rows = await list_reserved(store)
    assert [r[COL_ID] for r in rows] == ["1700000000001"]


# ============================================================================
# Удаление
# ============================================================================

@pytest.mark.asyncio
async def test_delete_resolves_position_right_before_deleting():
    """Строки выше удалили после показа списка — удаляем всё равно нужную"""
    store = LocalRowStore([_row("1"), _row("2"), _row("3")])
    store.delete_row_at(0)  # кто-то удалил "1" параллельно

    assert await delete_product(store, "3") is True
    assert [r[COL_ID] for r in store.list_rows()] == ["2"]


# ============================================================================
# Ошибки хранилища
# ============================================================================

@pytest.mark.asyncio
async def test_store_errors_propagate_after_retries():
    store = MagicMock()
    store.locate.side_effect = RuntimeError("Sheets down")

    with pytest.raises(RuntimeError):
        await approve_product(store, "1")

    assert store.locate.call_count == 3
    store.update_row.assert_not_called()


@pytest.mark.asyncio
async def test_retry_recovers_from_transient_error(store):
    original = store.locate
    calls = {"n": 0}

    def flaky(product_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConnectionError("reset")
        return original(product_id)

    store.locate = flaky
    assert await approve_product(store, "1700000000001") is True
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_compare_and_swap_rejects_lost_update(store):
    original = store.locate

    def locate_then_race(product_id):
        position, row = original(product_id)
        # другой обработчик успел записать строку
        store.rows[position][COL_STATUS] = STATUS_SOLD
        return position, row

    store.locate = locate_then_race

    with patch('config.RESERVATION_CAS', True):
        with pytest.raises(RowConflictError):
            await release_product(store, "1700000000001")

    assert store.rows[1][COL_STATUS] == STATUS_SOLD


@pytest.mark.asyncio
async def test_without_compare_and_swap_last_write_wins(store):
    original = store.locate

    def locate_then_race(product_id):
        position, row = original(product_id)
        store.rows[position][COL_STATUS] = STATUS_SOLD
        return position, row

    store.locate = locate_then_race

    assert await release_product(store, "1700000000001") is True
    assert store.rows[1][COL_STATUS] == STATUS_FREE


@pytest.mark.asyncio
async def test_write_retry_finds_row_again_after_shift():
    """Запись упала, а пока ждали повтора, строку выше удалили"""
    class FlakyWriteStore(LocalRowStore):
        failed = False

        def update_row(self, position, row, expected=None):
            if not self.failed:
                self.failed = True
                self.delete_row_at(0)
                raise ConnectionError("timeout")
            super().update_row(position, row, expected)

    store = FlakyWriteStore([_row("1"), _row("2"), _row("3", STATUS_RESERVED, ("C", "+3", "c"))])

    assert await approve_product(store, "3") is True

    rows = store.list_rows()
    assert [r[COL_ID] for r in rows] == ["2", "3"]
    assert rows[0][COL_STATUS] == STATUS_FREE
    assert rows[1][COL_STATUS] == STATUS_SOLD


# ============================================================================
# Медленная таблица не блокирует бота
# ============================================================================

class SlowStore(LocalRowStore):
    def list_rows(self):
        time.sleep(0.5)
        return super().list_rows()


async def _max_tick_gap(coro):
    ticks = []

    async def ticker():
        while True:
            ticks.append(time.monotonic())
            await asyncio.sleep(0.05)

    task = asyncio.create_task(ticker())
    try:
        result = await coro
    finally:
        task.cancel()
    gaps = [b - a for a, b in zip(ticks, ticks[1:])]
    return result, max(gaps)


@pytest.mark.asyncio
async def test_slow_sheet_read_does_not_block_event_loop():
    store = SlowStore([_row("1", STATUS_RESERVED, ("A", "+1", "a"))])

    approved, gap = await _max_tick_gap(approve_product(store, "1"))

    assert approved is True
    assert gap < 0.3


@pytest.mark.asyncio
async def test_slow_sheet_delete_does_not_block_event_loop():
    class SlowDeleteStore(LocalRowStore):
        def delete_row_at(self, position):
            time.sleep(0.5)
            super().delete_row_at(position)

    store = SlowDeleteStore([_row("1"), _row("2")])

    deleted, gap = await _max_tick_gap(delete_product(store, "1"))

    assert deleted is True
    assert [r[COL_ID] for r in store.list_rows()] == ["2"]
    assert gap < 0.3
