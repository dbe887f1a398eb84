"""
Платёжные шлюзы: Pakasir (QRIS) и ЮKassa.

Each adapter creates invoices, voids them, answers status polls and turns its
own webhook body into a PaymentNotification {order_id, amount, status}, so the
checkout code never sees gateway-specific field names. ``status`` is
normalized: "completed" means the money arrived.
"""

import asyncio
import json
import logging
import os
import uuid
from typing import Dict, Optional
from urllib.parse import quote

import aiohttp
from yookassa import Configuration, Payment

import config
from errors import AdapterError
from models import PAYMENT_COMPLETED, Invoice, PaymentNotification, parse_amount

logger = logging.getLogger(__name__)


class PaymentGateway:
    name = "base"

    async def create_invoice(self, order_id: str, amount: int) -> Invoice:
        raise NotImplementedError

    async def cancel(self, order_id: str, amount: int) -> None:
        raise NotImplementedError

    async def query_status(self, order_id: str, amount: int) -> str:
        raise NotImplementedError

    def parse_webhook(self, payload: dict) -> PaymentNotification:
        raise NotImplementedError


# ============================================================================
# PAKASIR (QRIS)
# ============================================================================

class PakasirGateway(PaymentGateway):
    name = "pakasir"

    def __init__(self, slug: str, api_key: str, base_url: str = "https://app.pakasir.com",
                 timeout: float = 15.0):
        self.slug = slug
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _body(self, order_id: str, amount: int) -> dict:
        return {
            "project": self.slug,
            "order_id": order_id,
            "amount": amount,
            "api_key": self.api_key,
        }

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, **kwargs) as resp:
                    data = await resp.json(content_type=None)
                    if resp.status >= 400:
                        raise AdapterError(f"Pakasir {path}: HTTP {resp.status} {data}")
                    if not isinstance(data, dict):
                        raise AdapterError(f"Pakasir {path}: неожиданный ответ {data!r}")
                    return data
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise AdapterError(f"Pakasir {path}: {e}") from e

    def pay_url(self, order_id: str, amount: int) -> str:
        return f"{self.base_url}/pay/{quote(self.slug)}/{amount}?order_id={quote(order_id)}"

    async def create_invoice(self, order_id: str, amount: int) -> Invoice:
        """💳 Создание QRIS-счёта в Pakasir"""
        data = await self._request(
            "POST", "/api/transactioncreate/qris", json=self._body(order_id, amount)
        )
        payment = data.get("payment") or {}
        if not payment.get("payment_number"):
            logger.error(f"❌ Pakasir не вернул QR для {order_id}: {data}")
            raise AdapterError(f"Pakasir: нет payment_number для {order_id}")

        try:
            total = parse_amount(payment.get("total_payment") or amount)
        except ValueError:
            total = amount

        logger.info(f"✅ Счёт Pakasir создан: {order_id} на {total}")
        return Invoice(
            order_id=order_id,
            amount=total,
            pay_code=str(payment["payment_number"]),
            pay_url=self.pay_url(order_id, amount),
            expires_at=str(payment["expired_at"]) if payment.get("expired_at") else None,
            payment_method=str(payment.get("payment_method") or "qris"),
        )

    async def cancel(self, order_id: str, amount: int) -> None:
        await self._request("POST", "/api/transactioncancel", json=self._body(order_id, amount))
        logger.info(f"🗑️ Счёт Pakasir {order_id} отменён")

    async def query_status(self, order_id: str, amount: int) -> str:
        data = await self._request(
            "GET", "/api/transactiondetail",
            params={
                "project": self.slug,
                "amount": str(amount),
                "order_id": order_id,
                "api_key": self.api_key,
            },
        )
        transaction = data.get("transaction") or {}
        return str(transaction.get("status") or data.get("status") or "").strip().lower()

    def parse_webhook(self, payload: dict) -> PaymentNotification:
        order_id = str(payload.get("order_id") or "").strip()
        if not order_id:
            raise AdapterError("Pakasir webhook без order_id")
        try:
            amount = parse_amount(payload.get("amount") or 0)
        except ValueError as e:
            raise AdapterError(f"Pakasir webhook: некорректная сумма {payload.get('amount')!r}") from e
        status = str(payload.get("status") or "").strip().lower()
        return PaymentNotification(order_id=order_id, amount=amount, status=status)


# ============================================================================
# ЮKASSA
# ============================================================================

YOOKASSA_STATUSES = {
    "succeeded": PAYMENT_COMPLETED,
    "canceled": "cancelled",
}


class YooKassaGateway(PaymentGateway):
    """
    ЮKassa knows its own payment ids; our order id travels in metadata.
    The order_id -> payment_id map is kept in a JSON file so cancel and status
    polls survive restarts.
    """
    name = "yookassa"

    def __init__(self, shop_id: str, secret_key: str, return_url: str,
                 payments_file: str = "pending_payments.json"):
        Configuration.account_id = shop_id
        Configuration.secret_key = secret_key
        self.return_url = return_url
        self.payments_file = payments_file
        self.payments: Dict[str, str] = self._load_payments()

    def _load_payments(self) -> Dict[str, str]:
        """📂 Загрузка соответствия заказ → платёж из файла"""
        if os.path.exists(self.payments_file):
            try:
                with open(self.payments_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                    logger.info(f"📂 Загружено {len(data)} платежей ЮKassa")
                    return data
            except (OSError, ValueError) as e:
                logger.error(f"❌ Ошибка загрузки {self.payments_file}: {e}")
        return {}

    def _save_payments(self) -> None:
        """💾 Сохранение соответствия заказ → платёж в файл"""
        try:
            with open(self.payments_file, 'w', encoding='utf-8') as f:
                json.dump(self.payments, f, ensure_ascii=False, indent=4)
        except OSError as e:
            logger.error(f"❌ Ошибка сохранения {self.payments_file}: {e}")

    def _payment_id(self, order_id: str) -> str:
        payment_id = self.payments.get(order_id)
        if not payment_id:
            raise AdapterError(f"ЮKassa: платёж для заказа {order_id} неизвестен")
        return payment_id

    async def create_invoice(self, order_id: str, amount: int) -> Invoice:
        """💳 Создание платежа в ЮKassa"""
        request = {
            "amount": {
                "value": str(amount),
                "currency": "RUB"
            },
            "confirmation": {
                "type": "redirect",
                "return_url": self.return_url
            },
            "capture": True,
            "description": f"Заказ {order_id}",
            "metadata": {"order_id": order_id}
        }
        try:
            payment = await asyncio.to_thread(Payment.create, request, str(uuid.uuid4()))
        except Exception as e:
            logger.error(f"❌ Ошибка создания платежа в ЮKassa: {e}")
            raise AdapterError(f"ЮKassa create: {e}") from e

        self.payments[order_id] = payment.id
        self._save_payments()
        logger.info(f"✅ Платеж создан в ЮKassa: {payment.id} для заказа {order_id}")
        return Invoice(
            order_id=order_id,
            amount=amount,
            pay_url=payment.confirmation.confirmation_url,
            payment_method="yookassa",
        )

    async def cancel(self, order_id: str, amount: int) -> None:
        payment_id = self._payment_id(order_id)
        try:
            await asyncio.to_thread(Payment.cancel, payment_id, str(uuid.uuid4()))
        except Exception as e:
            raise AdapterError(f"ЮKassa cancel {payment_id}: {e}") from e
        finally:
            self.payments.pop(order_id, None)
            self._save_payments()

    async def query_status(self, order_id: str, amount: int) -> str:
        payment_id = self._payment_id(order_id)
        try:
            payment = await asyncio.to_thread(Payment.find_one, payment_id)
        except Exception as e:
            raise AdapterError(f"ЮKassa find_one {payment_id}: {e}") from e
        status = str(payment.status or "").lower()
        return YOOKASSA_STATUSES.get(status, status)

    def parse_webhook(self, payload: dict) -> PaymentNotification:
        # ЮKassa присылает данные внутри поля "object"
        payment_object = payload.get("object") or {}
        metadata = payment_object.get("metadata") or {}
        order_id = str(metadata.get("order_id") or "").strip()
        if not order_id:
            # fall back to our own map
            payment_id = payment_object.get("id")
            order_id = next((o for o, p in self.payments.items() if p == payment_id), "")
        if not order_id:
            raise AdapterError("ЮKassa webhook без order_id")

        try:
            amount = parse_amount((payment_object.get("amount") or {}).get("value") or 0)
        except ValueError as e:
            raise AdapterError("ЮKassa webhook: некорректная сумма") from e

        status = str(payment_object.get("status") or "").lower()
        return PaymentNotification(
            order_id=order_id,
            amount=amount,
            status=YOOKASSA_STATUSES.get(status, status),
        )


def make_gateway(name: Optional[str] = None) -> PaymentGateway:
    name = (name or config.PAYMENT_GATEWAY).lower()
    if name == "pakasir":
        return PakasirGateway(config.PAKASIR_SLUG, config.PAKASIR_API_KEY, config.PAKASIR_BASE_URL)
    if name == "yookassa":
        return YooKassaGateway(
            config.YOOKASSA_SHOP_ID,
            config.YOOKASSA_API_KEY,
            config.BOT_RETURN_URL,
            config.YOOKASSA_PAYMENTS_FILE,
        )
    raise ValueError(f"Неизвестный платёжный шлюз: {name}")
