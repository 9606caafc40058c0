"""
Приём заказов из mini-app (web_app_data) и с сайта (POST /order).
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from reservations import CONTACT_TELEGRAM, reserve_order_items

logger = logging.getLogger(__name__)

SOURCE_BOT = "bot"
SOURCE_SITE = "site"

APPROVE_PREFIX = "approve_"
CANCEL_PREFIX = "cancel_"
DELETE_PREFIX = "delete_"


class OrderValidationError(ValueError):
    pass


def _number(value, what: str):
    if value is None or value == "":
        return 0
    try:
        number = float(str(value).replace(" ", "").replace(",", "."))
    except ValueError:
        raise OrderValidationError(f"Некорректное значение {what}: {value!r}")
    return int(number) if number.is_integer() else number


@dataclass
class OrderItem:
    id: str
    name: str = ""
    capacity: str = ""
    price: float = 0
    qty: int = 1

    @property
    def amount(self):
        return self.qty * self.price

    @classmethod
    def from_payload(cls, data: dict) -> "OrderItem":
        # mini-app шлёт qty, старая версия сайта quantity
        qty = data.get("qty", data.get("quantity", 1))
        return cls(
            id=str(data.get("id") or "").strip(),
            name=data.get("name") or "",
            capacity=data.get("capacity") or "",
            price=_number(data.get("price"), "price"),
            qty=_number(qty, "qty"),
        )


@dataclass
class Order:
    name: str = ""
    phone: str = ""
    contact_method: str = ""
    tg_username: str = ""
    delivery_method: str = ""
    delivery_type: str = ""
    address: str = ""
    comment: str = ""
    items: List[OrderItem] = field(default_factory=list)
    total: float = 0

    @classmethod
    def from_payload(cls, data: dict) -> "Order":
        items = [OrderItem.from_payload(i) for i in data.get("items") or []]
        total = data.get("total")
        if total in (None, ""):
            total = sum(i.amount for i in items)
        username = str(data.get("tg_username") or data.get("username") or "")
        return cls(
            name=data.get("name") or "",
            phone=data.get("phone") or "",
            contact_method=data.get("contactMethod") or "",
            tg_username=username.lstrip("@"),
            delivery_method=data.get("deliveryMethod") or "",
            delivery_type=data.get("deliveryType") or "",
            address=data.get("address") or "",
            comment=data.get("comment") or "",
            items=items,
            total=_number(total, "total"),
        )


def validate_order(data, require_total: bool = True) -> Order:
    """Minimal checks: items must be present, total must be declared (site) or computable"""
    if not isinstance(data, dict):
        raise OrderValidationError("Invalid order payload")
    items = data.get("items")
    if not items or not isinstance(items, list):
        raise OrderValidationError("Invalid order payload")
    if not all(isinstance(item, dict) for item in items):
        raise OrderValidationError("Invalid order item")
    if require_total and not data.get("total"):
        raise OrderValidationError("Invalid order payload")

    order = Order.from_payload(data)
    if not order.total:
        raise OrderValidationError("Invalid order payload")
    return order


def format_order_text(order: Order, source: str = SOURCE_BOT) -> str:
    if source == SOURCE_SITE:
        text = (
            f"🛒 Новый заказ (сайта)!\n\n"
            f"Имя: {order.name}\n"
            f"Телефон: {order.phone}\n"
            f"Как связаться: {order.contact_method}\n"
        )
        if order.tg_username:
            text += f"Username: @{order.tg_username}\n"
        items = "\n\n".join(
            f"📱 {i.name}\nОбъём: {i.capacity}\nЦена: {i.price}₽\nКол-во: {i.qty}\nСумма: {i.amount}₽"
            for i in order.items
        )
    else:
        text = (
            f"🛒 Новый заказ!\n\n"
            f"Имя: {order.name}\n"
            f"Телефон: {order.phone}\n"
        )
        if order.contact_method:
            text += f"Как связаться: {order.contact_method}\n"
        if order.contact_method == CONTACT_TELEGRAM and order.tg_username:
            text += f"Username: @{order.tg_username}\n"
        items = "\n".join(
            f"• {i.name} ({i.capacity or '-'}) x{i.qty} = {i.amount}₽"
            for i in order.items
        )

    text += (
        f"Доставка: {order.delivery_method} ({order.delivery_type})\n"
        f"Адрес: {order.address}\n"
        f"Комментарий: {order.comment or '-'}\n\n"
        f"Товары:\n{items}"
        f"\n\n💰 Итого: {order.total}₽"
    )
    return text


def action_keyboard(product_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("✅ Подтвердить", callback_data=f"{APPROVE_PREFIX}{product_id}")],
        [InlineKeyboardButton("❌ Отменить", callback_data=f"{CANCEL_PREFIX}{product_id}")],
    ])


def action_prompt(product_id: str, source: str = SOURCE_BOT) -> str:
    if source == SOURCE_SITE:
        return f"ID товара: {product_id}\nЧто делаем с заказом?"
    return f"Что делаем с заказом по товару ID: {product_id}?"


async def notify_operator(bot, order: Order, operator_chat_id: int, source: str = SOURCE_BOT) -> None:
    """
    Send the order text and the approve/cancel buttons to the operator chat.

    Only the first line item gets buttons; multi-item orders are approved
    item by item from the reserved list.
    """
    await bot.send_message(chat_id=operator_chat_id, text=format_order_text(order, source))

    first: Optional[OrderItem] = order.items[0] if order.items else None
    if first and first.id:
        await bot.send_message(
            chat_id=operator_chat_id,
            text=action_prompt(first.id, source),
            reply_markup=action_keyboard(first.id),
        )


async def process_order(bot, store, order: Order, operator_chat_id: int,
                        source: str = SOURCE_BOT) -> Tuple[List[str], List[str]]:
    """Notify the operator chat, then reserve every ordered product"""
    await notify_operator(bot, order, operator_chat_id, source)
    reserved, missing = await reserve_order_items(store, order)
    logger.info(f"🛒 Заказ от {order.phone}: в резерве {reserved}, не найдены {missing}")
    return reserved, missing
