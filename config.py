"""
Настройки бота TekBir из .env
"""

import os
from typing import List

from dotenv import load_dotenv

# Загружаем переменные окружения
load_dotenv()

TELEGRAM_BOT_TOKEN = os.getenv('TELEGRAM_BOT_TOKEN') or os.getenv('BOT_TOKEN')
ADMIN_CHAT_ID = int(os.getenv('ADMIN_CHAT_ID') or 0)
# Админ, которому доступны добавление/удаление товаров (по умолчанию = чат заказов)
ADMIN_TELEGRAM_ID = int(os.getenv('ADMIN_TELEGRAM_ID') or ADMIN_CHAT_ID)
WEBAPP_URL = os.getenv('WEBAPP_URL')

GOOGLE_SHEET_ID = os.getenv('GOOGLE_SHEET_ID')
GOOGLE_CREDS_FILE = os.getenv('GOOGLE_CREDS_FILE') or 'creds.json'
SHEET_NAME = os.getenv('SHEET_NAME') or 'Лист1'
SHEET_HEADER_ROWS = int(os.getenv('SHEET_HEADER_ROWS') or 1)

WEBHOOK_PORT = int(os.getenv('WEBHOOK_PORT') or os.getenv('PORT') or 8080)

LOG_FILE = os.getenv('LOG_FILE', 'bot.log')
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# Через сколько секунд удалять служебные сообщения ("Товар добавлен" и т.п.)
BANNER_TTL = float(os.getenv('BANNER_TTL') or 2)

# Retry параметры
MAX_RETRIES = 3
RETRY_DELAY = 2  # секунды
RETRY_BACKOFF = 1.5  # экспоненциальная задержка

# Проверка, что строку не перезаписали между чтением и записью
RESERVATION_CAS = os.getenv('RESERVATION_CAS', '0').lower() in ('1', 'true', 'yes')


def validate_config() -> List[str]:
    """Возвращает список незаполненных обязательных параметров"""
    required = {
        'TELEGRAM_BOT_TOKEN': TELEGRAM_BOT_TOKEN,
        'ADMIN_CHAT_ID': ADMIN_CHAT_ID,
        'WEBAPP_URL': WEBAPP_URL,
        'GOOGLE_SHEET_ID': GOOGLE_SHEET_ID,
    }
    return [name for name, value in required.items() if not value]
