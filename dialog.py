"""
Диалог добавления товара администратором.

name → price → category → condition → capacity → color → description
→ photos → confirm. Each text step stores one trimmed answer and asks the
next question; photos collects any number of pictures until "готово".
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from reservations import STATUS_FREE
from sheets_handler import pad_row

STEPS = ("name", "price", "category", "condition", "capacity", "color",
         "description", "photos", "confirm")

DONE_WORD = "готово"
NO_CAPACITY = "-"

PROMPTS = {
    "name": "Введите название товара:",
    "price": "Введите цену товара:",
    "category": "Введите категорию:",
    "condition": "Введите состояние (Новый / Б/У):",
    "capacity": "Введите память (например 128GB) или '-' если памяти нет:",
    "color": "Введите цвет товара:",
    "description": "Введите описание товара:",
    "photos": (
        "Теперь отправьте *одно или несколько фото* товара.\n\n"
        "Когда закончите — отправьте сообщение: *готово*"
    ),
}

NO_PHOTOS_TEXT = "❗ Вы ещё не добавили ни одного фото. Отправьте хотя бы одно фото товара."
WAITING_PHOTOS_TEXT = "Отправьте фото товара. Когда закончите — напишите *готово*."


@dataclass
class DialogReply:
    text: str
    parse_mode: Optional[str] = None
    # показать кнопки "Добавить" / "Отмена"
    confirm: bool = False


@dataclass
class ProductDraft:
    step: str = STEPS[0]
    name: str = ""
    price: str = ""
    category: str = ""
    condition: str = ""
    capacity: str = ""
    color: str = ""
    description: str = ""
    photos: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"📦 Новый товар:\n\n"
            f"Название: {self.name}\n"
            f"Цена: {self.price}\n"
            f"Категория: {self.category}\n"
            f"Состояние: {self.condition}\n"
            f"Память: {self.capacity or '-'}\n"
            f"Цвет: {self.color or '-'}\n"
            f"Описание: {self.description or '-'}\n"
            f"Фото: {len(self.photos)} шт."
        )

    def to_row(self, product_id: str) -> List[str]:
        """Строка A..O для листа товаров"""
        return pad_row([
            product_id,               # A: ID
            self.name,                # B: Название
            self.price,               # C: Цена
            self.category,            # D: Категория
            "",                       # E: Бренд
            self.condition,           # F: Состояние
            self.capacity,            # G: Память
            " ".join(self.photos),    # H: Фото
            self.description,         # I: Описание
            self.color,               # J: Цвет
            1,                        # K: Количество
            STATUS_FREE,              # L: Статус
            "", "", "",               # M, N, O: покупатель
        ])


def new_product_id() -> str:
    return str(int(time.time() * 1000))


def _next_step(step: str) -> str:
    return STEPS[STEPS.index(step) + 1]


def _prompt(step: str) -> DialogReply:
    return DialogReply(PROMPTS[step], parse_mode="Markdown" if step == "photos" else None)


def apply_text(draft: ProductDraft, text: str) -> Optional[DialogReply]:
    """Store one answer and return what to send next (None: nothing to send)"""
    value = (text or "").strip()
    step = draft.step

    if step == "confirm":
        return None

    if step == "photos":
        if value.lower() != DONE_WORD:
            return DialogReply(WAITING_PHOTOS_TEXT, parse_mode="Markdown")
        if not draft.photos:
            return DialogReply(NO_PHOTOS_TEXT)
        draft.step = "confirm"
        return DialogReply(draft.summary(), confirm=True)

    if step == "capacity" and value == NO_CAPACITY:
        value = ""

    setattr(draft, step, value)
    draft.step = _next_step(step)
    return _prompt(draft.step)


def apply_photo(draft: ProductDraft, url: str) -> Optional[DialogReply]:
    if draft.step != "photos":
        return None
    draft.photos.append(url)
    return DialogReply(f"Фото добавлено ({len(draft.photos)}). "
                       f"Можете отправить ещё или напишите «готово».")


class AdminSessions:
    """
    In-memory state of admin dialogs, keyed by Telegram user id.

    Holds the product draft, the ids of every message of the add-product
    dialog (to delete them at the end) and the id of the delete-list message.
    Lives in application.bot_data and is lost on restart.
    """

    def __init__(self):
        self.drafts: Dict[int, ProductDraft] = {}
        self.trails: Dict[int, List[int]] = {}
        self.delete_lists: Dict[int, List[int]] = {}

    def start(self, user_id: int) -> ProductDraft:
        draft = ProductDraft()
        self.drafts[user_id] = draft
        return draft

    def get(self, user_id: int) -> Optional[ProductDraft]:
        return self.drafts.get(user_id)

    def finish(self, user_id: int) -> Optional[ProductDraft]:
        return self.drafts.pop(user_id, None)

    def track(self, user_id: int, message_id: int) -> None:
        self.trails.setdefault(user_id, []).append(message_id)

    def pop_trail(self, user_id: int) -> List[int]:
        return self.trails.pop(user_id, [])

    def set_delete_list(self, user_id: int, message_ids: List[int]) -> None:
        self.delete_lists[user_id] = list(message_ids)

    def pop_delete_list(self, user_id: int) -> List[int]:
        return self.delete_lists.pop(user_id, [])

    def is_idle(self, user_id: int) -> bool:
        return (user_id not in self.drafts
                and not self.trails.get(user_id)
                and not self.delete_lists.get(user_id))
