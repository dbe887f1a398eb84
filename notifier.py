"""
Notification Channel: отправка сообщений покупателям и админу через Telegram.

Every send returns True/False and never raises: a failed message must not
break order processing. Callers decide whether a False needs an admin alert.
"""

import html
import io
import logging
from typing import List, Optional, Sequence, Tuple

import qrcode
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import TelegramError

import config
from models import Invoice, Order, StockItem

logger = logging.getLogger(__name__)

# (text, callback_data) or (text, "url:https://...")
Button = Tuple[str, str]


def format_price(amount: int) -> str:
    """28000 -> 'Rp 28.000'"""
    return f"{config.CURRENCY} {amount:,}".replace(",", ".")


def make_qr_png(data: str) -> bytes:
    """QR-код (строка QRIS или ссылка) в PNG"""
    qr = qrcode.QRCode(border=2, box_size=10)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    bio = io.BytesIO()
    img.save(bio)
    return bio.getvalue()


def build_keyboard(buttons: Optional[Sequence[Button]]) -> Optional[InlineKeyboardMarkup]:
    if not buttons:
        return None
    rows = []
    for text, action in buttons:
        if action.startswith("url:"):
            rows.append([InlineKeyboardButton(text, url=action[len("url:"):])])
        else:
            rows.append([InlineKeyboardButton(text, callback_data=action)])
    return InlineKeyboardMarkup(rows)


def format_item(order: Order, item: StockItem) -> str:
    lines = [
        "✅ <b>Purchase completed</b>",
        "",
        f"🧾 Order: <code>{html.escape(order.order_id)}</code>",
        f"📦 Product: <b>{html.escape(order.group_id)}</b>",
        "",
        "<b>Product details:</b>",
    ]
    for label, value in item.payload:
        lines.append(f"• <b>{html.escape(label)}</b>: <code>{html.escape(value)}</code>")
    lines.append("")
    lines.append("Thank you 🙏")
    return "\n".join(lines)


class TelegramNotifier:
    def __init__(self, bot: Bot, admin_chat_id: int):
        self.bot = bot
        self.admin_chat_id = admin_chat_id

    async def send_text(self, recipient: int, text: str,
                        buttons: Optional[List[Button]] = None) -> bool:
        """Отправить уведомление пользователю"""
        try:
            await self.bot.send_message(
                chat_id=recipient,
                text=text,
                parse_mode="HTML",
                disable_web_page_preview=True,
                reply_markup=build_keyboard(buttons),
            )
            logger.info(f"✅ Уведомление отправлено пользователю {recipient}")
            return True
        except TelegramError as e:
            logger.error(f"❌ Ошибка отправки сообщения пользователю {recipient}: {e}")
            return False

    async def send_image(self, recipient: int, image: bytes, caption: str,
                         buttons: Optional[List[Button]] = None) -> bool:
        try:
            await self.bot.send_photo(
                chat_id=recipient,
                photo=image,
                caption=caption,
                parse_mode="HTML",
                reply_markup=build_keyboard(buttons),
            )
            logger.info(f"🖼️ Изображение отправлено пользователю {recipient}")
            return True
        except TelegramError as e:
            logger.error(f"❌ Ошибка отправки изображения пользователю {recipient}: {e}")
            return False

    async def alert_admin(self, text: str) -> bool:
        """✅ Отправить уведомление в админский чат с обработкой ошибок"""
        if not self.admin_chat_id:
            logger.error("❌ ADMIN_CHAT_ID не установлен!")
            return False
        logger.info(f"📤 Отправляю сообщение в админский чат ({self.admin_chat_id}): {text[:50]}...")
        return await self.send_text(self.admin_chat_id, text)

    async def send_invoice(self, recipient: int, order: Order, invoice: Invoice) -> bool:
        """💳 Инструкция по оплате: QR-код + кнопки проверки и отмены."""
        caption = (
            "💳 <b>Invoice created</b>\n\n"
            f"📦 Product: <b>{html.escape(order.group_id)}</b> x1 — {format_price(order.amount)}\n"
            f"🧾 Order: <code>{html.escape(order.order_id)}</code>\n"
            f"💰 Total to pay: <b>{format_price(invoice.amount)}</b>\n"
            f"🏦 Method: <b>{html.escape(invoice.payment_method)}</b>\n"
        )
        if invoice.expires_at:
            caption += f"⏰ Expires: <b>{html.escape(invoice.expires_at)}</b>\n"
        caption += "\nScan the QR code to pay. The product is sent automatically after payment."

        buttons: List[Button] = []
        if invoice.pay_url:
            buttons.append(("🌐 Open payment page", f"url:{invoice.pay_url}"))
        buttons.append(("🔄 Check status", f"check:{order.order_id}"))
        buttons.append(("❌ Cancel order", f"cancel:{order.order_id}"))

        qr_data = invoice.pay_code or invoice.pay_url
        if qr_data:
            try:
                image = make_qr_png(qr_data)
            except (ValueError, OSError) as e:
                logger.error(f"❌ Не удалось построить QR для {order.order_id}: {e}")
            else:
                return await self.send_image(recipient, image, caption, buttons)
        return await self.send_text(recipient, caption, buttons)

    async def send_item(self, recipient: int, order: Order, item: StockItem) -> bool:
        return await self.send_text(recipient, format_item(order, item))
