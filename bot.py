"""
TekBir бот
==========================================================================

- Заказы из mini-app (web_app_data) и с сайта (POST /order)
- Резерв товара в Google Sheets: Свободен → Резерв → Продан / Свободен
- Кнопки "Подтвердить" / "Отменить" в чате заказов
- Админ: пошаговое добавление товара, удаление товара, список резервов
"""

import asyncio
import json
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from typing import Iterable

from telegram import (
    Update,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    KeyboardButton,
    ReplyKeyboardMarkup,
    WebAppInfo,
)
from telegram.error import TelegramError
from telegram.request import HTTPXRequest
from telegram.ext import (
    Application,
    CommandHandler,
    MessageHandler,
    CallbackQueryHandler,
    ConversationHandler,
    filters,
    ContextTypes,
)
from aiohttp import web

from config import (
    TELEGRAM_BOT_TOKEN,
    ADMIN_CHAT_ID,
    ADMIN_TELEGRAM_ID,
    WEBAPP_URL,
    WEBHOOK_PORT,
    LOG_FILE,
    LOG_LEVEL,
    BANNER_TTL,
    validate_config,
)
from dialog import PROMPTS, AdminSessions, apply_photo, apply_text, new_product_id
from orders import (
    APPROVE_PREFIX,
    CANCEL_PREFIX,
    DELETE_PREFIX,
    SOURCE_BOT,
    SOURCE_SITE,
    OrderValidationError,
    notify_operator,
    process_order,
    validate_order,
)
from reservations import (
    approve_product,
    delete_product,
    list_products,
    list_reserved,
    release_product,
    reserve_order_items,
)
from sheets_handler import (
    COL_BUYER_NAME,
    COL_ID,
    COL_NAME,
    COL_QUANTITY,
    GoogleSheetsHandler,
    LocalRowStore,
)

logger = logging.getLogger(__name__)

ACCESS_DENIED_TEXT = "⛔ Нет доступа"

# Состояния диалога добавления товара
ADD_FIELDS, ADD_PHOTOS, ADD_CONFIRM = range(3)

# Задачи отложенного удаления сообщений (держим ссылки, пока не завершатся)
_background_tasks = set()


# ============================================================================
# ЛОГИРОВАНИЕ
# ============================================================================

class AccessLogFilter(logging.Filter):
    """Фильтрует шумные ошибки aiohttp (например, HTTPS handshake на HTTP порт)"""
    def filter(self, record):
        if "BadStatusLine" in str(record.msg) or "Invalid method encountered" in str(record.msg):
            return False
        return True


def setup_logging():
    # Активный файл: bot.log, архивы: bot.log.DD_MM_YY
    log_handler = TimedRotatingFileHandler(
        filename=LOG_FILE,
        when='midnight',
        interval=1,
        backupCount=30,
        encoding='utf-8'
    )
    log_handler.suffix = "%d_%m_%y"

    logging.basicConfig(
        level=LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            log_handler,
            logging.StreamHandler()
        ]
    )
    logging.getLogger("aiohttp.server").addFilter(AccessLogFilter())
    # httpx пишет каждый getUpdates
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================================
# ВСПОМОГАТЕЛЬНЫЕ ФУНКЦИИ
# ============================================================================

def is_admin(user) -> bool:
    return user is not None and user.id == ADMIN_TELEGRAM_ID


def get_store(context: ContextTypes.DEFAULT_TYPE):
    return context.bot_data["store"]


def get_sessions(context: ContextTypes.DEFAULT_TYPE) -> AdminSessions:
    return context.bot_data["sessions"]


def admin_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("➕ Добавить товар", callback_data="add_product")],
        [InlineKeyboardButton("🗑 Удалить товар", callback_data="delete_product_list")],
        [InlineKeyboardButton("📋 Заказы в резерве", callback_data="confirm_order_list")],
    ])


def confirm_add_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([
        [InlineKeyboardButton("✅ Добавить", callback_data="confirm_add")],
        [InlineKeyboardButton("❌ Отмена", callback_data="cancel_add")],
    ])


async def delete_messages_quietly(bot, chat_id: int, message_ids: Iterable[int]) -> None:
    """Best-effort: уже удалённые или слишком старые сообщения пропускаем"""
    for message_id in message_ids:
        try:
            await bot.delete_message(chat_id=chat_id, message_id=message_id)
        except TelegramError as e:
            logger.debug(f"Не удалось удалить сообщение {message_id}: {e}")


async def _delete_later(bot, chat_id: int, message_id: int, delay: float) -> None:
    await asyncio.sleep(delay)
    await delete_messages_quietly(bot, chat_id, [message_id])


def schedule_message_cleanup(bot, chat_id: int, message_id: int, delay: float = None) -> None:
    """Убрать служебное сообщение через BANNER_TTL секунд, не дожидаясь"""
    task = asyncio.create_task(
        _delete_later(bot, chat_id, message_id, BANNER_TTL if delay is None else delay)
    )
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def clear_add_dialog(bot, sessions: AdminSessions, user_id: int) -> None:
    """Удалить все сообщения сценария добавления товара (вопросы, ответы, фото)"""
    await delete_messages_quietly(bot, user_id, sessions.pop_trail(user_id))


async def deny_access(query, action: str) -> None:
    logger.warning(f"🚨 Попытка {action} от неадмина: {query.from_user.id}")
    await query.message.reply_text(ACCESS_DENIED_TEXT)


# ============================================================================
# /start
# ============================================================================

async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """🏠 Обработчик команды /start"""
    user = update.effective_user
    logger.info(f"👤 Пользователь {user.id} запустил /start")

    shop_keyboard = ReplyKeyboardMarkup(
        [[KeyboardButton("🛍 Открыть магазин", web_app=WebAppInfo(url=WEBAPP_URL))]],
        resize_keyboard=True,
    )
    await update.message.reply_text("Добро пожаловать в TekBir!", reply_markup=shop_keyboard)

    if is_admin(user):
        await update.message.reply_text("👨‍💼 Панель администратора:", reply_markup=admin_keyboard())


# ============================================================================
# АДМИН - ДОБАВЛЕНИЕ ТОВАРА
# ============================================================================

def _dialog_state(draft) -> int:
    """Состояние ConversationHandler по текущему шагу черновика"""
    if draft.step == "photos":
        return ADD_PHOTOS
    if draft.step == "confirm":
        return ADD_CONFIRM
    return ADD_FIELDS


async def add_product(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """➕ Кнопка "Добавить товар": начало диалога"""
    query = update.callback_query
    await query.answer()
    user = query.from_user

    if not is_admin(user):
        await deny_access(query, "добавить товар")
        return ConversationHandler.END

    sessions = get_sessions(context)
    sessions.start(user.id)
    logger.info(f"➕ Админ {user.id} начал добавление товара")

    msg = await query.message.reply_text(PROMPTS["name"])
    sessions.track(user.id, msg.message_id)
    return ADD_FIELDS


async def admin_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """📝 Ответы администратора на шаги диалога"""
    user = update.effective_user
    sessions = get_sessions(context)
    message = update.message
    draft = sessions.get(user.id) if user else None
    if draft is None or message is None:
        return ConversationHandler.END

    sessions.track(user.id, message.message_id)

    reply = apply_text(draft, message.text)
    if reply is not None:
        markup = confirm_add_keyboard() if reply.confirm else None
        sent = await message.reply_text(reply.text, parse_mode=reply.parse_mode, reply_markup=markup)
        sessions.track(user.id, sent.message_id)
    return _dialog_state(draft)


async def admin_photo(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """📸 Фото товара (можно несколько)"""
    user = update.effective_user
    sessions = get_sessions(context)
    message = update.message
    draft = sessions.get(user.id) if user else None
    if draft is None or message is None:
        return ConversationHandler.END
    if draft.step != "photos":
        return _dialog_state(draft)

    sessions.track(user.id, message.message_id)

    # Самый большой размер идёт последним
    biggest = message.photo[-1]
    photo_file = await context.bot.get_file(biggest.file_id)

    reply = apply_photo(draft, photo_file.file_path)
    sent = await message.reply_text(reply.text)
    sessions.track(user.id, sent.message_id)
    return ADD_PHOTOS


async def confirm_add(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """✅ Подтверждение добавления товара"""
    query = update.callback_query
    await query.answer()
    user = query.from_user

    if not is_admin(user):
        await deny_access(query, "подтвердить товар")
        return ConversationHandler.END

    sessions = get_sessions(context)
    draft = sessions.get(user.id)
    if draft is None or draft.step != "confirm":
        await query.message.reply_text("Ошибка: нет данных для добавления")
        return ConversationHandler.END

    product_id = new_product_id()
    try:
        await asyncio.to_thread(get_store(context).append_row, draft.to_row(product_id))
    except Exception as e:
        logger.error(f"❌ Ошибка при записи в Google Sheets: {e}")
        await query.message.reply_text("⚠️ Ошибка при добавлении товара в таблицу")
        return ADD_CONFIRM

    logger.info(f"✅ Товар {product_id} ({draft.name}) добавлен админом {user.id}")
    sessions.finish(user.id)
    await clear_add_dialog(context.bot, sessions, user.id)

    msg = await query.message.reply_text("✅ Товар успешно добавлен!")
    schedule_message_cleanup(context.bot, msg.chat_id, msg.message_id)
    return ConversationHandler.END


async def cancel_add(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """❌ Отмена добавления товара"""
    query = update.callback_query
    await query.answer()
    user = query.from_user

    if not is_admin(user):
        await deny_access(query, "отменить добавление")
        return ConversationHandler.END

    sessions = get_sessions(context)
    sessions.finish(user.id)
    await clear_add_dialog(context.bot, sessions, user.id)
    logger.info(f"❌ Админ {user.id} отменил добавление товара")

    msg = await query.message.reply_text("❌ Добавление товара отменено.")
    schedule_message_cleanup(context.bot, msg.chat_id, msg.message_id)
    return ConversationHandler.END


def build_add_product_conversation() -> ConversationHandler:
    """Диалог добавления товара: поля по очереди → фото → подтверждение"""
    text = MessageHandler(filters.TEXT & ~filters.COMMAND, admin_text)
    return ConversationHandler(
        entry_points=[
            CallbackQueryHandler(add_product, pattern='^add_product$'),
        ],
        states={
            ADD_FIELDS: [text],
            ADD_PHOTOS: [
                MessageHandler(filters.PHOTO, admin_photo),
                text,
            ],
            ADD_CONFIRM: [
                CallbackQueryHandler(confirm_add, pattern='^confirm_add$'),
                CallbackQueryHandler(cancel_add, pattern='^cancel_add$'),
            ],
        },
        fallbacks=[
            CallbackQueryHandler(cancel_add, pattern='^cancel_add$'),
        ],
        # повторное "Добавить товар" начинает черновик заново
        allow_reentry=True,
    )



# ============================================================================
# АДМИН - УДАЛЕНИЕ ТОВАРА
# ============================================================================

async def delete_product_list(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """🗑 Список товаров для удаления"""
    query = update.callback_query
    await query.answer()
    user = query.from_user

    if not is_admin(user):
        await deny_access(query, "удалить товар")
        return

    sessions = get_sessions(context)
    # старый список (если был) уже не нужен
    await delete_messages_quietly(context.bot, query.message.chat_id, sessions.pop_delete_list(user.id))

    try:
        rows = await list_products(get_store(context))
    except Exception as e:
        logger.error(f"❌ Ошибка чтения товаров: {e}")
        await query.message.reply_text("⚠️ Ошибка чтения таблицы")
        return

    if not rows:
        await query.message.reply_text("⚠️ Товаров нет")
        return

    buttons = [
        [InlineKeyboardButton(row[COL_NAME] or row[COL_ID], callback_data=f"{DELETE_PREFIX}{row[COL_ID]}")]
        for row in rows
    ]
    sent = await query.message.reply_text(
        "🗑 Выберите товар для удаления:",
        reply_markup=InlineKeyboardMarkup(buttons)
    )
    sessions.set_delete_list(user.id, [sent.message_id])


async def delete_product_action(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """🗑 delete_<id>"""
    query = update.callback_query
    await query.answer()
    user = query.from_user

    if not is_admin(user):
        await deny_access(query, "удалить товар")
        return

    product_id = query.data[len(DELETE_PREFIX):]
    sessions = get_sessions(context)
    await delete_messages_quietly(context.bot, query.message.chat_id, sessions.pop_delete_list(user.id))

    try:
        deleted = await delete_product(get_store(context), product_id)
    except Exception as e:
        logger.error(f"❌ Ошибка удаления товара {product_id}: {e}")
        await query.message.reply_text("⚠️ Ошибка удаления товара")
        return

    if not deleted:
        await query.message.reply_text("❌ Товар не найден")
        return

    logger.info(f"🗑 Товар {product_id} удалён админом {user.id}")
    msg = await query.message.reply_text("🗑 Товар удалён!")
    schedule_message_cleanup(context.bot, msg.chat_id, msg.message_id)


# ============================================================================
# ЗАКАЗЫ - РЕЗЕРВ / ПОДТВЕРЖДЕНИЕ / ОТМЕНА
# ============================================================================

async def confirm_order_list(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """📋 Товары в резерве — кнопки подтверждения"""
    query = update.callback_query
    await query.answer()
    user = query.from_user

    if not is_admin(user):
        await deny_access(query, "открыть резервы")
        return

    try:
        reserved = await list_reserved(get_store(context))
    except Exception as e:
        logger.error(f"❌ Ошибка чтения резервов: {e}")
        await query.message.reply_text("⚠️ Ошибка чтения таблицы")
        return

    if not reserved:
        await query.message.reply_text("Нет заказов в резерве.")
        return

    buttons = [
        [InlineKeyboardButton(
            f"{row[COL_NAME]} ({row[COL_BUYER_NAME] or 'без имени'}, кол-во: {row[COL_QUANTITY] or 1})",
            callback_data=f"{APPROVE_PREFIX}{row[COL_ID]}",
        )]
        for row in reserved
    ]
    await query.message.reply_text("Выберите заказ для подтверждения:", reply_markup=InlineKeyboardMarkup(buttons))


async def approve_order(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """✅ approve_<id>: Резерв → Продан"""
    query = update.callback_query
    product_id = query.data[len(APPROVE_PREFIX):]
    await query.answer("Подтверждаю...")

    try:
        if not await approve_product(get_store(context), product_id):
            await query.edit_message_text("❌ Товар не найден")
            return
        logger.info(f"✅ Заказ по товару {product_id} подтверждён ({query.from_user.id})")
        await query.edit_message_text("✅ Заказ подтверждён. Товар продан.")
    except Exception as e:
        logger.error(f"❌ approve_ ERROR ({product_id}): {e}")
        await query.message.reply_text("⚠️ Ошибка при подтверждении заказа")


async def cancel_order(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """❌ cancel_<id>: Резерв → Свободен"""
    query = update.callback_query
    product_id = query.data[len(CANCEL_PREFIX):]
    await query.answer("Отменяю...")

    try:
        if not await release_product(get_store(context), product_id):
            await query.edit_message_text("❌ Товар не найден")
            return
        logger.info(f"🔄 Резерв товара {product_id} снят ({query.from_user.id})")
        await query.edit_message_text("🔄 Резерв снят. Товар снова свободен.")
    except Exception as e:
        logger.error(f"❌ cancel_ ERROR ({product_id}): {e}")
        await query.message.reply_text("⚠️ Ошибка при отмене заказа")


async def web_app_data(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """🛒 Заказ из mini-app"""
    message = update.effective_message
    try:
        data = json.loads(message.web_app_data.data)
        order = validate_order(data, require_total=False)
        logger.info(f"🛒 Заказ из mini-app от {update.effective_user.id}: {len(order.items)} поз.")

        await notify_operator(context.bot, order, ADMIN_CHAT_ID, SOURCE_BOT)
        await message.reply_text("Спасибо! Ваш заказ отправлен!")

        await reserve_order_items(get_store(context), order)
    except Exception as e:
        logger.error(f"❌ web_app_data ERROR: {e}")
        await message.reply_text("Ошибка заказа ⚠️")


# ============================================================================
# HTTP: POST /order (сайт / mini-app)
# ============================================================================

async def handle_order_request(request):
    """✅ Заказ с сайта"""
    try:
        data = await request.json()
    except ValueError:
        return web.json_response({"error": "Invalid JSON"}, status=400)

    try:
        order = validate_order(data)
        await process_order(request.app["bot"], request.app["store"], order, ADMIN_CHAT_ID, SOURCE_SITE)
        return web.json_response({"ok": True})
    except OrderValidationError as e:
        logger.warning(f"⚠️ Некорректный заказ с сайта: {e}")
        return web.json_response({"error": str(e)}, status=400)
    except Exception as e:
        logger.error(f"❌ Ошибка /order: {e}")
        return web.json_response({"ok": False, "error": str(e)}, status=500)


def create_web_app(bot, store) -> web.Application:
    app = web.Application()
    app["bot"] = bot
    app["store"] = store
    app.router.add_post('/order', handle_order_request)
    return app


# ============================================================================
# FALLBACK / ОШИБКИ
# ============================================================================

async def handle_unknown_callback(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """⚠️ Обработка неизвестных callback'ов"""
    query = update.callback_query
    logger.warning(f"⚠️ Unknown callback от пользователя {query.from_user.id}: {query.data}")
    await query.answer()


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Глобальный обработчик ошибок"""
    logger.error(msg="Exception while handling an update:", exc_info=context.error)


# ============================================================================
# ЗАПУСК БОТА
# ============================================================================

def connect_store():
    """Google Sheets, а если не получилось — локальное хранилище"""
    try:
        store = GoogleSheetsHandler()
        logger.info("✅ Google Sheets подключен!")
        return store
    except Exception as e:
        logger.warning(f"⚠️ Не удалось подключить Google Sheets: {e}")
        logger.error("❌ Работаем на локальном хранилище: каталог пуст, заказы не найдут товаров, "
                     "добавленные товары пропадут после перезапуска")
        return LocalRowStore()


def build_application(store, sessions: AdminSessions = None) -> Application:
    request = HTTPXRequest(
        connection_pool_size=8,
        connect_timeout=60.0,
        read_timeout=60.0,
        write_timeout=60.0
    )
    application = Application.builder().token(TELEGRAM_BOT_TOKEN).request(request).build()
    application.bot_data["store"] = store
    application.bot_data["sessions"] = sessions or AdminSessions()

    # 🔧 ПОРЯДОК ОБРАБОТЧИКОВ КРИТИЧЕН: точные кнопки раньше префиксов,
    # иначе cancel_add уйдёт в cancel_<id>, а delete_product_list в delete_<id>
    application.add_handler(CommandHandler('start', start))

    application.add_handler(build_add_product_conversation())
    # старые кнопки Добавить/Отмена вне диалога: отвечаем здесь, а не в cancel_<id>
    application.add_handler(CallbackQueryHandler(confirm_add, pattern='^confirm_add$'))
    application.add_handler(CallbackQueryHandler(cancel_add, pattern='^cancel_add$'))
    application.add_handler(CallbackQueryHandler(delete_product_list, pattern='^delete_product_list$'))
    application.add_handler(CallbackQueryHandler(confirm_order_list, pattern='^confirm_order_list$'))

    application.add_handler(CallbackQueryHandler(approve_order, pattern=f'^{APPROVE_PREFIX}.+'))
    application.add_handler(CallbackQueryHandler(cancel_order, pattern=f'^{CANCEL_PREFIX}.+'))
    application.add_handler(CallbackQueryHandler(delete_product_action, pattern=f'^{DELETE_PREFIX}.+'))

    application.add_handler(MessageHandler(filters.StatusUpdate.WEB_APP_DATA, web_app_data))

    application.add_handler(CallbackQueryHandler(handle_unknown_callback))
    application.add_error_handler(error_handler)
    return application


def main():
    """Запуск бота"""
    setup_logging()

    missing = validate_config()
    if missing:
        logger.error(f"❌ Не установлены в .env: {', '.join(missing)}")
        sys.exit(1)

    logger.info("🚀 Запуск бота TekBir...")
    store = connect_store()
    application = build_application(store)
    app = create_web_app(application.bot, store)

    async def run_app_and_bot():
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, '0.0.0.0', WEBHOOK_PORT)
        await site.start()
        logger.info(f"🌍 HTTP server started on port {WEBHOOK_PORT}. Routes: /order")

        logger.info("📡 Запуск polling...")
        await application.initialize()
        try:
            me = await application.bot.get_me()
            logger.info(f"🤖 Bot Username: @{me.username}")
        except TelegramError as e:
            logger.error(f"❌ Failed to get bot identity: {e}")
        logger.info(f"👤 Admin ID: {ADMIN_TELEGRAM_ID}, 💬 Admin Chat ID: {ADMIN_CHAT_ID}")

        await application.updater.start_polling()
        await application.start()
        logger.info("✅ Бот запущен и готов к работе!")

        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            logger.info("🛑 Stopping...")
            await application.updater.stop()
            await application.stop()
            await application.shutdown()
            await runner.cleanup()

    try:
        asyncio.run(run_app_and_bot())
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
