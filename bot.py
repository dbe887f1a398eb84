"""
✅ bot.py - QRIS магазин цифровых товаров
==========================================================================

Каталог: вкладки таблицы (одна вкладка = одна категория, строка = единица товара)
Оплата: QRIS счёт в платёжном шлюзе (Pakasir / ЮKassa)
Выдача: webhook "completed" → ровно одна строка из вкладки → покупателю

ГАРАНТИИ:
✅ Повторный/поддельный webhook не приводит к повторной выдаче (статус заказа = шлюз)
✅ Сумма из webhook сверяется с суммой заказа
✅ Webhook отвечает сразу, обработка идёт в фоне
✅ Ошибки одного заказа не влияют на другие
✅ Все секреты в .env
"""

import asyncio
import html
import logging
from logging.handlers import TimedRotatingFileHandler
from typing import Dict, List, Optional, Set, Tuple

from aiohttp import web
from telegram import BotCommand, BotCommandScopeChat, BotCommandScopeDefault, Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    TypeHandler,
    filters,
)
from telegram.request import HTTPXRequest

import config
from checkout import CancelStatus, CheckoutService, CheckoutStatus
from errors import AdapterError, NotOwner, OrderNotFound, ShopError, StoreUnavailable
from inventory import InventoryPool
from ledger_store import LedgerStore
from models import OrderStatus, PaymentNotification, PAYMENT_COMPLETED
from notifier import Button, TelegramNotifier, build_keyboard, format_price
from orders import OrderLedger
from payments import make_gateway
from users import UserRegistry

logger = logging.getLogger(__name__)

# ============================================================================
# ЛОГИРОВАНИЕ
# ============================================================================


class AccessLogFilter(logging.Filter):
    """Фильтрует шумные ошибки aiohttp (например, HTTPS handshake на HTTP порт)"""
    def filter(self, record):
        if "BadStatusLine" in str(record.msg) or "Invalid method encountered" in str(record.msg):
            return False
        return True


def setup_logging(log_file: str = None) -> None:
    # Активный файл: bot.log, архивы: bot.log.DD_MM_YY
    log_handler = TimedRotatingFileHandler(
        filename=log_file or config.LOG_FILE,
        when='midnight',
        interval=1,
        backupCount=30,  # Хранить логи за последние 30 дней
        encoding='utf-8'
    )
    log_handler.suffix = "%d_%m_%y"

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            log_handler,
            logging.StreamHandler()
        ]
    )
    logging.getLogger("aiohttp.server").addFilter(AccessLogFilter())
    # httpx логирует каждый запрос к Bot API
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================================
# ГЛОБАЛЬНЫЕ ПЕРЕМЕННЫЕ
# ============================================================================

application: Optional[Application] = None
checkout: Optional[CheckoutService] = None
users: Optional[UserRegistry] = None

# фоновые задачи обработки webhook'ов (ссылки держим, чтобы их не собрал GC)
BACKGROUND_TASKS: Set[asyncio.Task] = set()

# ============================================================================
# КАТАЛОГ
# ============================================================================


def build_catalog(counts: Dict[str, int], prices: Dict[str, int]) -> Tuple[str, List[Button]]:
    """📦 Текст каталога и кнопки покупки (только категории с остатком > 0)"""
    lines = ["📦 <b>Current stock:</b>"]
    buttons: List[Button] = []
    for group_id, price in prices.items():
        count = counts.get(group_id, 0)
        dot = "🟢" if count > 0 else "🔴"
        lines.append(f"{dot} <b>{html.escape(group_id)}</b>: <b>{count}</b> — {format_price(price)}")
        if count > 0:
            buttons.append((f"{group_id} ({format_price(price)})", f"buy:{group_id}"))
    lines.append("")
    lines.append("Choose a product:" if buttons else "Everything is sold out, check back later.")
    return "\n".join(lines), buttons


async def send_catalog(update: Update) -> None:
    try:
        counts = await checkout.inventory.counts(checkout.prices)
    except StoreUnavailable as e:
        logger.error(f"❌ Ошибка получения остатков: {e}")
        await update.effective_message.reply_text("⚠️ The catalog is temporarily unavailable. Try again later.")
        return
    text, buttons = build_catalog(counts, checkout.prices)
    await update.effective_message.reply_text(
        text, parse_mode="HTML", reply_markup=build_keyboard(buttons)
    )


# ============================================================================
# ОБРАБОТЧИКИ КОМАНД
# ============================================================================

async def track_user(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """👤 Учёт каждого пользователя (вкладка Users); сбой хранилища не мешает обработке"""
    user = update.effective_user
    if user is None:
        return
    try:
        await users.touch(user.id)
    except StoreUnavailable as e:
        logger.error(f"❌ Ошибка учёта пользователя {user.id}: {e}")


async def start(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """🏠 Обработчик команды /start"""
    user = update.effective_user
    logger.info(f"👤 /start от пользователя {user.id}")

    text = "👋 <b>Welcome!</b>\n\n"
    try:
        total_users = await users.total()
        total_done = await checkout.orders.count_completed()
        text += (
            f"👥 <b>Bot users:</b> {total_users}\n"
            f"✅ <b>Completed orders:</b> {total_done}\n\n"
        )
    except StoreUnavailable as e:
        logger.error(f"❌ Ошибка получения статистики для /start: {e}")
    text += "Digital products, delivered automatically after QRIS payment."

    await update.message.reply_text(text, parse_mode="HTML")
    await send_catalog(update)


async def cmd_stock(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """📦 /stock - наличие по категориям"""
    await send_catalog(update)


async def cmd_orders(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """🧾 /orders - незавершённые и проблемные заказы (только админ)"""
    user = update.effective_user
    if user.id != config.ADMIN_CHAT_ID:
        logger.warning(f"⚠️ Попытка /orders от не-админа {user.id}")
        return

    try:
        pending = await checkout.orders.list_by_status(OrderStatus.PENDING)
        waiting = await checkout.orders.list_by_status(OrderStatus.CLAIMED, OrderStatus.PAID_NO_STOCK)
    except StoreUnavailable as e:
        logger.error(f"❌ Ошибка чтения заказов: {e}")
        await update.message.reply_text("⚠️ Orders are temporarily unavailable.")
        return

    lines = [f"🧾 <b>Pending orders:</b> {len(pending)}", ""]
    if waiting:
        lines.append("⚠️ <b>Paid, waiting for manual delivery:</b>")
        for order in waiting:
            lines.append(
                f"• <code>{html.escape(order.order_id)}</code> — {html.escape(order.group_id)} "
                f"— {order.status.value} — buyer {order.buyer_id} — {order.paid_at or order.created_at}"
            )
    else:
        lines.append("✅ No paid orders waiting for delivery.")
    await update.message.reply_text("\n".join(lines), parse_mode="HTML")


async def cmd_stats(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """📊 /stats - пользователи и продажи по дням (только админ)"""
    user = update.effective_user
    if user.id != config.ADMIN_CHAT_ID:
        logger.warning(f"⚠️ Попытка /stats от не-админа {user.id}")
        return

    try:
        total_users = await users.total()
        total_done = await checkout.orders.count_completed()
        per_day = await checkout.orders.daily_sales(14)
    except StoreUnavailable as e:
        logger.error(f"❌ Ошибка чтения статистики: {e}")
        await update.message.reply_text("⚠️ Stats are temporarily unavailable.")
        return

    await update.message.reply_text(
        render_stats(total_users, total_done, per_day), parse_mode="HTML"
    )


def render_stats(total_users: int, total_done: int, per_day: List[Tuple[str, int]]) -> str:
    lines = [
        f"👥 <b>Users:</b> {total_users}",
        f"✅ <b>Completed orders:</b> {total_done}",
        "",
        "📊 <b>Sales, last 14 days:</b>",
    ]
    if not per_day:
        lines.append("No completed orders yet.")
    for day, count in per_day:
        lines.append(f"<code>{day}</code> {'█' * min(20, count)} {count}")
    return "\n".join(lines)


# ============================================================================
# КНОПКИ
# ============================================================================

async def button_buy(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """🛒 buy:<group>"""
    query = update.callback_query
    user = query.from_user
    await query.answer()

    group_id = query.data.split(':', 1)[1]
    logger.info(f"🛒 Пользователь {user.id} покупает {group_id}")
    try:
        result = await checkout.start_checkout(user.id, group_id)
    except ShopError as e:
        logger.error(f"❌ Ошибка оформления заказа для {user.id}: {e}")
        await query.message.reply_text("⚠️ Something went wrong, please try again later.")
        return

    if result.status is CheckoutStatus.CREATED:
        logger.info(f"✅ Заказ {result.order.order_id} ожидает оплаты")


async def button_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """❌ cancel:<order_id>"""
    query = update.callback_query
    user = query.from_user
    await query.answer()

    order_id = query.data.split(':', 1)[1]
    try:
        result = await checkout.cancel_checkout(order_id, user.id)
    except OrderNotFound:
        await query.message.reply_text("Order not found.")
        return
    except NotOwner:
        await query.message.reply_text("This order is not yours.")
        return
    except ShopError as e:
        logger.error(f"❌ Ошибка отмены заказа {order_id}: {e}")
        await query.message.reply_text("⚠️ Something went wrong, please try again later.")
        return

    if result is CancelStatus.ALREADY_COMPLETED:
        await query.message.reply_text("This order is already completed and cannot be cancelled.")
    else:
        await query.message.reply_text(
            f"✅ Order <code>{html.escape(order_id)}</code> cancelled. You can order again any time.",
            parse_mode="HTML",
        )


async def button_check(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """🔄 check:<order_id>"""
    query = update.callback_query
    user = query.from_user
    await query.answer()

    order_id = query.data.split(':', 1)[1]
    try:
        status = await checkout.check_status(order_id, user.id)
    except OrderNotFound:
        await query.message.reply_text("Order not found.")
        return
    except NotOwner:
        await query.message.reply_text("This order is not yours.")
        return
    except AdapterError as e:
        logger.error(f"❌ Ошибка запроса статуса {order_id}: {e}")
        await query.message.reply_text("⚠️ Could not reach the payment service, try again in a minute.")
        return
    except ShopError as e:
        logger.error(f"❌ Ошибка проверки заказа {order_id}: {e}")
        await query.message.reply_text("⚠️ Something went wrong, please try again later.")
        return

    await query.message.reply_text(
        f"Status of <code>{html.escape(order_id)}</code>: <b>{html.escape(status)}</b>",
        parse_mode="HTML",
    )


# ============================================================================
# FALLBACK ОБРАБОТЧИКИ
# ============================================================================

async def handle_unexpected_input(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """📨 Обработка неожиданного ввода"""
    user = update.effective_user
    logger.info(f"📨 Сообщение от {user.id}: {update.message.text}")
    await update.message.reply_text("Type /start to see the catalog.")


async def handle_callback_error(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """⚠️ Обработка неизвестных callback'ов"""
    query = update.callback_query
    await query.answer()
    logger.warning(f"⚠️ Unknown callback от пользователя {query.from_user.id}: {query.data}")


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Глобальный обработчик ошибок"""
    logger.error(msg="Exception while handling an update:", exc_info=context.error)


# ============================================================================
# WEBHOOK'И
# ============================================================================

def schedule(coro) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(coro)
    BACKGROUND_TASKS.add(task)
    task.add_done_callback(BACKGROUND_TASKS.discard)
    return task


async def process_payment_callback(notification: PaymentNotification) -> None:
    """Фоновая обработка уведомления об оплате (ответ шлюзу уже отправлен)."""
    try:
        if notification.is_completed and config.VERIFY_WEBHOOK_VIA_API:
            # 🔒 ПРОВЕРКА ЧЕРЕЗ API (Double Check)
            status = await checkout.gateway.query_status(notification.order_id, notification.amount)
            if status != PAYMENT_COMPLETED:
                logger.error(
                    f"❌ Фейковый webhook? API говорит статус {notification.order_id}: {status or 'unknown'}"
                )
                return

        outcome = await checkout.handle_payment_notification(notification)
        logger.info(f"📬 Webhook {notification.order_id}: {outcome.value}")

    except AdapterError as e:
        logger.error(f"❌ Ошибка проверки статуса через API для {notification.order_id}: {e}")
    except ShopError as e:
        logger.error(f"❌ Ошибка обработки оплаты {notification.order_id}: {e}")
        await checkout.notifier.alert_admin(
            f"🚨 Payment callback for {notification.order_id} failed: {e}\n"
            f"ACTION: check the order manually."
        )
    except Exception:
        logger.exception(f"❌ Непредвиденная ошибка обработки оплаты {notification.order_id}")


async def handle_payment_webhook(request: web.Request) -> web.Response:
    """✅ Обработчик webhook'а платёжного шлюза: отвечаем сразу, обрабатываем в фоне"""
    if request.match_info.get('secret') != config.PAYMENT_WEBHOOK_SECRET:
        logger.warning(f"⚠️ Webhook оплаты с неверным секретом от {request.remote}")
        return web.Response(status=403, text="Forbidden")

    try:
        data = await request.json()
        notification = checkout.gateway.parse_webhook(data)
    except (ValueError, AdapterError, AttributeError) as e:
        logger.error(f"❌ Некорректный webhook оплаты: {e}")
        return web.json_response({"ok": True})

    logger.info(
        f"📬 Webhook оплаты: заказ {notification.order_id}, сумма {notification.amount}, "
        f"статус {notification.status}"
    )
    schedule(process_payment_callback(notification))
    return web.json_response({"ok": True})


async def handle_telegram_webhook(request: web.Request) -> web.Response:
    """Обновления Telegram в режиме webhook: кладём в очередь и отвечаем сразу"""
    if request.match_info.get('secret') != config.TELEGRAM_WEBHOOK_SECRET:
        return web.Response(status=403, text="Forbidden")
    try:
        data = await request.json()
    except ValueError:
        logger.error("❌ Telegram webhook: некорректный JSON")
        return web.json_response({"ok": True})

    update = Update.de_json(data, application.bot)
    await application.update_queue.put(update)
    return web.json_response({"ok": True})


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "service": "qris-shop-bot"})


def create_web_app() -> web.Application:
    app = web.Application()
    app.router.add_post('/payment/webhook/{secret}', handle_payment_webhook)
    app.router.add_post('/telegram/webhook/{secret}', handle_telegram_webhook)
    app.router.add_get('/', handle_health)
    app.router.add_get('/health', handle_health)
    return app


# ============================================================================
# ЗАПУСК БОТА
# ============================================================================

async def build_store() -> LedgerStore:
    if config.STORE_BACKEND == 'sqlite':
        from sqlite_store import SqliteLedgerStore
        return await SqliteLedgerStore(config.SQLITE_PATH).open()

    from sheets_handler import GoogleSheetsHandler
    return GoogleSheetsHandler()


def build_application() -> Application:
    # ⚙️ НАСТРОЙКА REQUEST (Fix Timeouts)
    request = HTTPXRequest(
        connection_pool_size=8,
        connect_timeout=60.0,
        read_timeout=60.0,
        write_timeout=60.0
    )
    app = Application.builder().token(config.TELEGRAM_BOT_TOKEN).request(request).build()

    # 🔧 ПОРЯДОК ОБРАБОТЧИКОВ КРИТИЧЕН!
    # 👤 учёт пользователей до всех остальных обработчиков
    app.add_handler(TypeHandler(Update, track_user), group=-1)
    app.add_handler(CommandHandler('start', start))
    app.add_handler(CommandHandler('stock', cmd_stock))
    app.add_handler(CommandHandler('orders', cmd_orders))
    app.add_handler(CommandHandler('stats', cmd_stats))
    app.add_handler(CallbackQueryHandler(button_buy, pattern='^buy:'))
    app.add_handler(CallbackQueryHandler(button_cancel, pattern='^cancel:'))
    app.add_handler(CallbackQueryHandler(button_check, pattern='^check:'))
    app.add_handler(CallbackQueryHandler(handle_callback_error))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_unexpected_input))
    app.add_error_handler(error_handler)
    return app


async def set_commands(app: Application) -> None:
    """✅ Set Bot Commands (Menu Button)"""
    try:
        commands_user = [
            BotCommand("start", "🏠 Catalog"),
            BotCommand("stock", "📦 Stock"),
        ]
        await app.bot.set_my_commands(commands_user, scope=BotCommandScopeDefault())
        if config.ADMIN_CHAT_ID:
            commands_admin = commands_user + [BotCommand("orders", "🧾 Orders"), BotCommand("stats", "📊 Stats")]
            await app.bot.set_my_commands(commands_admin, scope=BotCommandScopeChat(chat_id=config.ADMIN_CHAT_ID))
        logger.info("✅ Команды бота установлены (Menu Button)")
    except Exception as e:
        logger.error(f"❌ Ошибка установки команд: {e}")


async def run_app_and_bot():
    global application, checkout, users

    store = await build_store()
    application = build_application()
    gateway = make_gateway()
    checkout = CheckoutService(
        inventory=InventoryPool(store),
        orders=OrderLedger(store, config.ORDERS_TAB),
        gateway=gateway,
        notifier=TelegramNotifier(application.bot, config.ADMIN_CHAT_ID),
        prices=config.PRICE_BY_GROUP,
        admin_id=config.ADMIN_CHAT_ID,
    )
    users = UserRegistry(store, config.USERS_TAB)

    runner = web.AppRunner(create_web_app())
    await runner.setup()
    site = web.TCPSite(runner, '0.0.0.0', config.WEBHOOK_PORT)
    await site.start()
    logger.info(f"🌍 Webhook server started on port {config.WEBHOOK_PORT}")

    await application.initialize()
    me = await application.bot.get_me()
    logger.info(f"🤖 Bot Username: @{me.username}")
    logger.info(f"🛍️ Каталог: {', '.join(f'{g}={p}' for g, p in config.PRICE_BY_GROUP.items())}")
    logger.info(f"📊 Хранилище: {config.STORE_BACKEND}, шлюз: {gateway.name}")
    await set_commands(application)

    if config.TELEGRAM_MODE == 'webhook':
        url = f"{config.PUBLIC_URL}/telegram/webhook/{config.TELEGRAM_WEBHOOK_SECRET}"
        await application.bot.set_webhook(url=url)
        logger.info("🔗 Telegram webhook установлен")
    else:
        logger.info("📡 Запуск polling...")
        await application.updater.start_polling()
    await application.start()
    logger.info("✅ Бот запущен и готов к работе!")

    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        logger.info("🛑 Stopping...")
        if application.updater.running:
            await application.updater.stop()
        await application.stop()
        await application.shutdown()
        await runner.cleanup()
        if BACKGROUND_TASKS:
            await asyncio.gather(*BACKGROUND_TASKS, return_exceptions=True)
        await store.close()


def main():
    """Запуск бота"""
    setup_logging()
    config.validate_config()
    logger.info("🚀 Запуск QRIS магазина...")
    try:
        asyncio.run(run_app_and_bot())
    except KeyboardInterrupt:
        pass


if __name__ == '__main__':
    main()
