"""
Checkout Orchestrator: резерв → оплата → выдача.

  ┌──────────────────────────────────────────────────────────────┐
  │ start_checkout: count > 0 → Order PENDING → счёт → QR         │
  │ webhook "completed":                                         │
  │   сумма совпала? → transition(PENDING → CLAIMED) выиграл?     │
  │     ├─ take_one → товар   → выдать, CLAIMED → PAID           │
  │     ├─ take_one → пусто   → PAID_NO_STOCK, алерт админу      │
  │     └─ сбой хранилища     → остаётся CLAIMED, алерт админу   │
  │ cancel: transition(PENDING → CANCELLED) + void в шлюзе        │
  └──────────────────────────────────────────────────────────────┘

The order status transition happens before inventory is touched, and its
result gates everything after it: duplicate and concurrent callbacks for the
same order can never deliver twice. The concrete unit is chosen only at
delivery time (first available), not reserved at checkout.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from errors import AdapterError, AmountMismatch, NotOwner, OrderNotFound, StoreUnavailable
from inventory import InventoryPool
from models import Invoice, Order, OrderStatus, PaymentNotification, PAYMENT_COMPLETED, new_order_id
from notifier import TelegramNotifier, format_price
from orders import OrderLedger
from payments import PaymentGateway

logger = logging.getLogger(__name__)


class CheckoutStatus(str, Enum):
    CREATED = "created"
    OUT_OF_STOCK = "out_of_stock"
    UNKNOWN_GROUP = "unknown_group"
    PAYMENT_FAILED = "payment_failed"


class CancelStatus(str, Enum):
    CANCELLED = "cancelled"
    ALREADY_COMPLETED = "already_completed"


class DeliveryOutcome(str, Enum):
    IGNORED = "ignored"
    UNKNOWN_ORDER = "unknown_order"
    AMOUNT_MISMATCH = "amount_mismatch"
    DUPLICATE = "duplicate"
    DELIVERED = "delivered"
    NO_STOCK = "no_stock"
    STALLED = "stalled"


@dataclass
class CheckoutResult:
    status: CheckoutStatus
    order: Optional[Order] = None
    invoice: Optional[Invoice] = None


class CheckoutService:
    def __init__(
        self,
        inventory: InventoryPool,
        orders: OrderLedger,
        gateway: PaymentGateway,
        notifier: TelegramNotifier,
        prices: Dict[str, int],
        admin_id: int = 0,
    ):
        self.inventory = inventory
        self.orders = orders
        self.gateway = gateway
        self.notifier = notifier
        self.prices = prices
        self.admin_id = admin_id

    # ------------------------------------------------------------------
    # START
    # ------------------------------------------------------------------

    async def start_checkout(self, buyer_id: int, group_id: str) -> CheckoutResult:
        """✅ Оформление заказа: проверка остатка, заказ PENDING, счёт в шлюзе.

        No order is created when the category is empty. If the gateway fails
        the order stays PENDING (inert, kept for the audit trail).
        StoreUnavailable propagates to the handler boundary.
        """
        if group_id not in self.prices:
            logger.warning(f"⚠️ Неизвестная категория {group_id} от {buyer_id}")
            await self.notifier.send_text(buyer_id, "Unknown product.")
            return CheckoutResult(CheckoutStatus.UNKNOWN_GROUP)

        if await self.inventory.count(group_id) <= 0:
            logger.info(f"❌ {group_id} нет в наличии, заказ для {buyer_id} не создан")
            await self.notifier.send_text(buyer_id, f"Sorry, <b>{group_id}</b> is out of stock.")
            return CheckoutResult(CheckoutStatus.OUT_OF_STOCK)

        order = Order(
            order_id=new_order_id(),
            buyer_id=buyer_id,
            group_id=group_id,
            amount=self.prices[group_id],
        )
        await self.orders.create(order)

        try:
            invoice = await self.gateway.create_invoice(order.order_id, order.amount)
        except AdapterError as e:
            logger.error(f"❌ Ошибка создания счёта для {order.order_id}: {e}")
            await self.notifier.send_text(
                buyer_id, "❌ Could not create the payment. Please try again later."
            )
            return CheckoutResult(CheckoutStatus.PAYMENT_FAILED, order=order)

        await self.notifier.send_invoice(buyer_id, order, invoice)
        await self.notifier.alert_admin(
            f"🆕 New order\n"
            f"Product: {order.group_id}\n"
            f"Order: {order.order_id}\n"
            f"Buyer: {buyer_id}\n"
            f"Total: {format_price(order.amount)}"
        )
        return CheckoutResult(CheckoutStatus.CREATED, order=order, invoice=invoice)

    # ------------------------------------------------------------------
    # CANCEL
    # ------------------------------------------------------------------

    async def _owned_order(self, order_id: str, requester_id: int) -> Order:
        order = await self.orders.find(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if requester_id != order.buyer_id and requester_id != self.admin_id:
            raise NotOwner(order_id, requester_id)
        return order

    async def cancel_checkout(self, order_id: str, requester_id: int) -> CancelStatus:
        """Отмена заказа покупателем (или админом). Уже оплаченный заказ не меняется."""
        order = await self._owned_order(order_id, requester_id)

        if not await self.orders.transition(order_id, OrderStatus.CANCELLED):
            logger.info(f"⏭️ Заказ {order_id} уже завершён, отмена невозможна")
            return CancelStatus.ALREADY_COMPLETED

        try:
            await self.gateway.cancel(order_id, order.amount)
        except AdapterError as e:
            logger.warning(f"⚠️ Не удалось отменить счёт {order_id} в шлюзе: {e}")

        logger.info(f"🗑️ Заказ {order_id} отменён пользователем {requester_id}")
        return CancelStatus.CANCELLED

    # ------------------------------------------------------------------
    # PAYMENT
    # ------------------------------------------------------------------

    async def handle_payment_notification(self, notification: PaymentNotification) -> DeliveryOutcome:
        """✅ Обработка уведомления об оплате (повторы, гонки и подделки допустимы).

        Safe to call any number of times for the same order: only the caller
        that wins PENDING → CLAIMED consumes stock and messages the buyer.
        """
        order_id = notification.order_id
        if not notification.is_completed:
            logger.info(f"⏭️ Уведомление {order_id} со статусом '{notification.status}' проигнорировано")
            return DeliveryOutcome.IGNORED

        order = await self.orders.find(order_id)
        if order is None:
            logger.warning(f"⚠️ Оплата для неизвестного заказа {order_id}, игнорирую")
            return DeliveryOutcome.UNKNOWN_ORDER

        if notification.amount != order.amount:
            mismatch = AmountMismatch(order_id, order.amount, notification.amount)
            logger.error(f"🚨 {mismatch}")
            await self.notifier.alert_admin(
                f"🚨 AMOUNT MISMATCH\n"
                f"Order: {order_id}\n"
                f"Expected: {format_price(order.amount)}\n"
                f"Reported: {format_price(notification.amount)}\n"
                f"Nothing was delivered. Check the payment manually."
            )
            return DeliveryOutcome.AMOUNT_MISMATCH

        if not await self.orders.transition(order_id, OrderStatus.CLAIMED):
            logger.info(f"⏭️ Повторное уведомление для {order_id}, выдача уже была")
            return DeliveryOutcome.DUPLICATE

        # from here on the order is ours: every failure must reach the admin
        try:
            item = await self.inventory.take_one(order.group_id)
            if item is None:
                await self.orders.mark_no_stock(order_id)
        except StoreUnavailable as e:
            return await self._stalled(order, e)

        if item is None:
            await self.notifier.send_text(
                order.buyer_id,
                f"✅ Payment received for <code>{order_id}</code>, but <b>{order.group_id}</b> "
                f"ran out while processing. An admin will deliver it shortly."
            )
            await self.notifier.alert_admin(
                f"⚠️ PAID BUT OUT OF STOCK\n"
                f"Order: {order_id}\n"
                f"Product: {order.group_id}\n"
                f"Buyer: {order.buyer_id}"
            )
            return DeliveryOutcome.NO_STOCK

        if not await self.notifier.send_item(order.buyer_id, order, item):
            payload = "\n".join(f"{label}: {value}" for label, value in item.payload)
            await self.notifier.alert_admin(
                f"🚨 Order {order_id} is PAID and the unit was consumed, "
                f"but the buyer {order.buyer_id} could not be messaged.\n"
                f"ACTION: deliver manually:\n{payload}"
            )
        else:
            await self.notifier.alert_admin(
                f"✅ Order completed\n"
                f"Order: {order_id}\n"
                f"Product: {order.group_id}\n"
                f"Buyer: {order.buyer_id}\n"
                f"Total: {format_price(order.amount)}"
            )

        try:
            await self.orders.finalize(order_id, OrderStatus.PAID)
        except StoreUnavailable as e:
            logger.error(f"❌ Заказ {order_id} выдан, но статус PAID не записан: {e}")
            await self.notifier.alert_admin(
                f"⚠️ Order {order_id} was delivered but its status could not be saved "
                f"(still CLAIMED): {e}\n"
                f"ACTION: set the status to PAID manually."
            )
        logger.info(f"✅ Заказ {order_id} оплачен и выдан")
        return DeliveryOutcome.DELIVERED

    async def _stalled(self, order: Order, error: Exception) -> DeliveryOutcome:
        """Оплата принята, но единица не взята: заказ остаётся CLAIMED до ручной выдачи."""
        logger.error(f"🚨 Заказ {order.order_id} оплачен, выдача остановлена: {error}")
        await self.notifier.send_text(
            order.buyer_id,
            f"✅ Payment received for <code>{order.order_id}</code>. Delivery is delayed, "
            f"an admin will send your product shortly."
        )
        await self.notifier.alert_admin(
            f"🚨 DELIVERY STALLED\n"
            f"Order: {order.order_id}\n"
            f"Product: {order.group_id}\n"
            f"Buyer: {order.buyer_id}\n"
            f"Status: CLAIMED (paid, nothing delivered)\n"
            f"Error: {error}\n"
            f"ACTION: deliver manually."
        )
        return DeliveryOutcome.STALLED

    async def check_status(self, order_id: str, requester_id: int) -> str:
        """🔄 Проверка статуса опросом шлюза; оплаченный заказ идёт через тот же шлюз статусов."""
        order = await self._owned_order(order_id, requester_id)
        if order.status.is_terminal:
            return order.status.value

        status = await self.gateway.query_status(order_id, order.amount)
        logger.info(f"🔎 Статус {order_id} в шлюзе: {status or 'unknown'}")
        if status == PAYMENT_COMPLETED:
            await self.handle_payment_notification(
                PaymentNotification(order_id=order_id, amount=order.amount, status=status)
            )
            refreshed = await self.orders.find(order_id)
            return refreshed.status.value if refreshed else status
        return status or "unknown"
