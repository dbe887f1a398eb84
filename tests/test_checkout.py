import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from checkout import CancelStatus, CheckoutStatus, DeliveryOutcome
from errors import AdapterError, NotOwner, OrderNotFound, StoreUnavailable
from models import Order, OrderStatus, PaymentNotification

ADMIN_ID = 1


def paid(order_id, amount, status="completed"):
    return PaymentNotification(order_id=order_id, amount=amount, status=status)


async def place_order(ledger, order_id="INV-1", buyer_id=42, group_id="A", amount=9000):
    await ledger.create(Order(order_id=order_id, buyer_id=buyer_id, group_id=group_id, amount=amount))


# ============================================================================
# START CHECKOUT
# ============================================================================

@pytest.mark.asyncio
async def test_start_checkout_creates_pending_order_and_invoice(store, shop, gateway, notifier):
    await store.seed("A", [["code"], ["X1"]])

    result = await shop.start_checkout(42, "A")

    assert result.status is CheckoutStatus.CREATED
    assert result.order.status is OrderStatus.PENDING
    assert result.order.amount == 9000
    assert result.order.order_id.startswith("INV-")
    gateway.create_invoice.assert_awaited_once_with(result.order.order_id, 9000)
    notifier.send_invoice.assert_awaited_once()
    notifier.alert_admin.assert_awaited_once()
    # no unit is reserved at checkout
    assert len(await store.read("A")) == 2


@pytest.mark.asyncio
async def test_out_of_stock_creates_no_order(store, shop, gateway, notifier):
    await store.seed("A", [["code"]])

    result = await shop.start_checkout(42, "A")

    assert result.status is CheckoutStatus.OUT_OF_STOCK
    assert await store.read("Orders") == []
    gateway.create_invoice.assert_not_awaited()
    notifier.send_text.assert_awaited_once()


@pytest.mark.asyncio
async def test_unknown_group(shop, gateway):
    result = await shop.start_checkout(42, "ZZ")
    assert result.status is CheckoutStatus.UNKNOWN_GROUP
    gateway.create_invoice.assert_not_awaited()


@pytest.mark.asyncio
async def test_gateway_failure_leaves_inert_pending_order(store, shop, ledger, gateway, notifier):
    await store.seed("A", [["code"], ["X1"]])
    gateway.create_invoice.side_effect = AdapterError("gateway down")

    result = await shop.start_checkout(42, "A")

    assert result.status is CheckoutStatus.PAYMENT_FAILED
    assert (await ledger.find(result.order.order_id)).status is OrderStatus.PENDING
    notifier.send_invoice.assert_not_awaited()
    notifier.send_text.assert_awaited_once()
    assert len(await store.read("A")) == 2


# ============================================================================
# PAYMENT NOTIFICATION
# ============================================================================

@pytest.mark.asyncio
async def test_example_purchase_with_duplicate_webhook(store, shop, ledger, notifier):
    """Один товар, оплата, повторный вебхук: выдача ровно один раз."""
    await store.seed("A", [["code"], ["X1"]])
    result = await shop.start_checkout(42, "A")
    order_id = result.order.order_id

    first = await shop.handle_payment_notification(paid(order_id, 9000))
    second = await shop.handle_payment_notification(paid(order_id, 9000))

    assert first is DeliveryOutcome.DELIVERED
    assert second is DeliveryOutcome.DUPLICATE
    assert (await ledger.find(order_id)).status is OrderStatus.PAID
    assert await shop.inventory.count("A") == 0
    notifier.send_item.assert_awaited_once()
    buyer_id, order, item = notifier.send_item.await_args.args
    assert buyer_id == 42
    assert order.order_id == order_id
    assert item.payload == [("code", "X1")]


@pytest.mark.asyncio
async def test_concurrent_duplicate_webhooks_deliver_once(store, shop, ledger, notifier):
    await store.seed("A", [["code"], ["X1"], ["X2"]])
    await place_order(ledger)

    outcomes = await asyncio.gather(*(shop.handle_payment_notification(paid("INV-1", 9000)) for _ in range(5)))

    assert outcomes.count(DeliveryOutcome.DELIVERED) == 1
    assert outcomes.count(DeliveryOutcome.DUPLICATE) == 4
    assert notifier.send_item.await_count == 1
    assert await shop.inventory.count("A") == 1


@pytest.mark.asyncio
async def test_more_payments_than_stock_never_oversells(store, shop, ledger, notifier):
    await store.seed("A", [["code"], ["X1"], ["X2"]])
    for i in range(5):
        await place_order(ledger, order_id=f"INV-{i}", buyer_id=100 + i)

    outcomes = await asyncio.gather(
        *(shop.handle_payment_notification(paid(f"INV-{i}", 9000)) for i in range(5))
    )

    assert outcomes.count(DeliveryOutcome.DELIVERED) == 2
    assert outcomes.count(DeliveryOutcome.NO_STOCK) == 3
    delivered = sorted(call.args[2].payload[0][1] for call in notifier.send_item.await_args_list)
    assert delivered == ["X1", "X2"]
    assert len(await ledger.list_by_status(OrderStatus.PAID_NO_STOCK)) == 3
    assert len(await ledger.list_by_status(OrderStatus.PAID)) == 2


@pytest.mark.asyncio
async def test_amount_mismatch_changes_nothing(store, shop, ledger, notifier):
    await store.seed("B", [["code"], ["Y1"]])
    await place_order(ledger, group_id="B", amount=50000)

    outcome = await shop.handle_payment_notification(paid("INV-1", 1))

    assert outcome is DeliveryOutcome.AMOUNT_MISMATCH
    assert (await ledger.find("INV-1")).status is OrderStatus.PENDING
    assert await shop.inventory.count("B") == 1
    notifier.send_item.assert_not_awaited()
    notifier.alert_admin.assert_awaited_once()

    # the correct amount still goes through afterwards
    assert await shop.handle_payment_notification(paid("INV-1", 50000)) is DeliveryOutcome.DELIVERED


@pytest.mark.asyncio
async def test_non_completed_status_is_ignored(store, shop, ledger, notifier):
    await store.seed("A", [["code"], ["X1"]])
    await place_order(ledger)

    outcome = await shop.handle_payment_notification(paid("INV-1", 9000, status="pending"))

    assert outcome is DeliveryOutcome.IGNORED
    assert (await ledger.find("INV-1")).status is OrderStatus.PENDING
    notifier.send_item.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_order_is_ignored(shop, notifier):
    outcome = await shop.handle_payment_notification(paid("INV-404", 9000))
    assert outcome is DeliveryOutcome.UNKNOWN_ORDER
    notifier.send_item.assert_not_awaited()
    notifier.alert_admin.assert_not_awaited()


@pytest.mark.asyncio
async def test_pool_drained_between_checkout_and_payment(store, shop, ledger, notifier):
    await store.seed("A", [["code"]])
    await place_order(ledger)

    outcome = await shop.handle_payment_notification(paid("INV-1", 9000))

    assert outcome is DeliveryOutcome.NO_STOCK
    assert (await ledger.find("INV-1")).status is OrderStatus.PAID_NO_STOCK
    notifier.send_text.assert_awaited_once()
    notifier.alert_admin.assert_awaited_once()
    # a retry is a duplicate, not a second alert
    assert await shop.handle_payment_notification(paid("INV-1", 9000)) is DeliveryOutcome.DUPLICATE
    notifier.alert_admin.assert_awaited_once()


@pytest.mark.asyncio
async def test_failed_delivery_message_alerts_admin_with_payload(store, shop, ledger, notifier):
    await store.seed("A", [["code"], ["X1"]])
    await place_order(ledger)
    notifier.send_item.return_value = False

    outcome = await shop.handle_payment_notification(paid("INV-1", 9000))

    assert outcome is DeliveryOutcome.DELIVERED
    assert (await ledger.find("INV-1")).status is OrderStatus.PAID
    assert await shop.inventory.count("A") == 0
    alert = notifier.alert_admin.await_args.args[0]
    assert "X1" in alert


@pytest.mark.asyncio
async def test_store_failure_after_claim_alerts_admin(store, shop, ledger, notifier):
    await store.seed("A", [["code"], ["X1"]])
    await place_order(ledger)

    with patch.object(shop.inventory, "take_one", AsyncMock(side_effect=StoreUnavailable("sheets down"))):
        outcome = await shop.handle_payment_notification(paid("INV-1", 9000))

    assert outcome is DeliveryOutcome.STALLED
    assert (await ledger.find("INV-1")).status is OrderStatus.CLAIMED
    assert [o.order_id for o in await ledger.list_by_status(OrderStatus.CLAIMED)] == ["INV-1"]
    assert await shop.inventory.count("A") == 1
    notifier.send_item.assert_not_awaited()
    notifier.send_text.assert_awaited_once()
    notifier.alert_admin.assert_awaited_once()
    assert "INV-1" in notifier.alert_admin.await_args.args[0]

    # replays stay no-ops: the order waits for manual delivery
    assert await shop.handle_payment_notification(paid("INV-1", 9000)) is DeliveryOutcome.DUPLICATE
    notifier.alert_admin.assert_awaited_once()


@pytest.mark.asyncio
async def test_store_failure_on_no_stock_alerts_admin(store, shop, ledger, notifier):
    await store.seed("A", [["code"]])
    await place_order(ledger)

    with patch.object(ledger, "mark_no_stock", AsyncMock(side_effect=StoreUnavailable("sheets down"))):
        outcome = await shop.handle_payment_notification(paid("INV-1", 9000))

    assert outcome is DeliveryOutcome.STALLED
    assert (await ledger.find("INV-1")).status is OrderStatus.CLAIMED
    notifier.alert_admin.assert_awaited_once()


@pytest.mark.asyncio
async def test_status_save_failure_after_delivery_alerts_admin(store, shop, ledger, notifier):
    await store.seed("A", [["code"], ["X1"]])
    await place_order(ledger)

    with patch.object(ledger, "finalize", AsyncMock(side_effect=StoreUnavailable("sheets down"))):
        outcome = await shop.handle_payment_notification(paid("INV-1", 9000))

    assert outcome is DeliveryOutcome.DELIVERED
    notifier.send_item.assert_awaited_once()
    assert (await ledger.find("INV-1")).status is OrderStatus.CLAIMED
    assert "INV-1" in notifier.alert_admin.await_args.args[0]
    assert "PAID manually" in notifier.alert_admin.await_args.args[0]


@pytest.mark.asyncio
async def test_check_status_with_store_failure_alerts_admin(store, shop, ledger, notifier):
    await store.seed("A", [["code"], ["X1"]])
    await place_order(ledger)

    with patch.object(shop.inventory, "take_one", AsyncMock(side_effect=StoreUnavailable("sheets down"))):
        assert await shop.check_status("INV-1", 42) == "CLAIMED"

    notifier.alert_admin.assert_awaited_once()
    notifier.send_item.assert_not_awaited()


# ============================================================================
# CANCEL
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_pending_order(shop, ledger, gateway):
    await place_order(ledger)

    assert await shop.cancel_checkout("INV-1", 42) is CancelStatus.CANCELLED
    assert (await ledger.find("INV-1")).status is OrderStatus.CANCELLED
    gateway.cancel.assert_awaited_once_with("INV-1", 9000)


@pytest.mark.asyncio
async def test_payment_after_cancel_is_not_delivered(store, shop, ledger, notifier):
    await store.seed("A", [["code"], ["X1"]])
    await place_order(ledger)
    await shop.cancel_checkout("INV-1", 42)

    outcome = await shop.handle_payment_notification(paid("INV-1", 9000))

    assert outcome is DeliveryOutcome.DUPLICATE
    assert (await ledger.find("INV-1")).status is OrderStatus.CANCELLED
    assert await shop.inventory.count("A") == 1
    notifier.send_item.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_after_payment_is_rejected(store, shop, ledger, gateway, notifier):
    await store.seed("A", [["code"], ["X1"]])
    await place_order(ledger)
    await shop.handle_payment_notification(paid("INV-1", 9000))
    notifier.reset_mock()

    assert await shop.cancel_checkout("INV-1", 42) is CancelStatus.ALREADY_COMPLETED
    assert (await ledger.find("INV-1")).status is OrderStatus.PAID
    gateway.cancel.assert_not_awaited()
    notifier.send_text.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_survives_gateway_error(shop, ledger, gateway):
    await place_order(ledger)
    gateway.cancel.side_effect = AdapterError("timeout")

    assert await shop.cancel_checkout("INV-1", 42) is CancelStatus.CANCELLED
    assert (await ledger.find("INV-1")).status is OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_by_stranger_is_refused(shop, ledger):
    await place_order(ledger)
    with pytest.raises(NotOwner):
        await shop.cancel_checkout("INV-1", 7)
    assert (await ledger.find("INV-1")).status is OrderStatus.PENDING


@pytest.mark.asyncio
async def test_admin_may_cancel_any_order(shop, ledger):
    await place_order(ledger)
    assert await shop.cancel_checkout("INV-1", ADMIN_ID) is CancelStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_unknown_order(shop):
    with pytest.raises(OrderNotFound):
        await shop.cancel_checkout("INV-404", 42)


# ============================================================================
# STATUS CHECK
# ============================================================================

@pytest.mark.asyncio
async def test_check_status_delivers_when_gateway_says_completed(store, shop, ledger, gateway, notifier):
    await store.seed("A", [["code"], ["X1"]])
    await place_order(ledger)

    assert await shop.check_status("INV-1", 42) == "PAID"
    gateway.query_status.assert_awaited_once_with("INV-1", 9000)
    notifier.send_item.assert_awaited_once()

    # terminal orders are answered from the ledger
    assert await shop.check_status("INV-1", 42) == "PAID"
    gateway.query_status.assert_awaited_once()


@pytest.mark.asyncio
async def test_check_status_pending(shop, ledger, gateway, notifier):
    await place_order(ledger)
    gateway.query_status.return_value = "pending"

    assert await shop.check_status("INV-1", 42) == "pending"
    assert (await ledger.find("INV-1")).status is OrderStatus.PENDING
    notifier.send_item.assert_not_awaited()
