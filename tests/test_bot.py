import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer
from unittest.mock import AsyncMock, MagicMock, patch

import bot
import config
from checkout import DeliveryOutcome
from errors import AdapterError, StoreUnavailable
from models import Order, OrderStatus, PaymentNotification
from payments import PakasirGateway
from users import UserRegistry

SECRET = "s3cret"


@pytest.fixture
def mock_checkout():
    mock = MagicMock()
    mock.gateway = PakasirGateway("tokoku", "key")
    mock.gateway.query_status = AsyncMock(return_value="completed")
    mock.handle_payment_notification = AsyncMock(return_value=DeliveryOutcome.DELIVERED)
    mock.notifier.alert_admin = AsyncMock(return_value=True)
    with patch("bot.checkout", mock), \
            patch("config.PAYMENT_WEBHOOK_SECRET", SECRET), \
            patch("config.VERIFY_WEBHOOK_VIA_API", True):
        yield mock


async def drain_background():
    if bot.BACKGROUND_TASKS:
        await asyncio.gather(*list(bot.BACKGROUND_TASKS))


# ============================================================================
# КАТАЛОГ
# ============================================================================

def test_catalog_offers_only_groups_in_stock():
    prices = {"ID1": 28000, "ID2": 25000, "ID8": 9000}
    text, buttons = bot.build_catalog({"ID1": 3, "ID2": 0, "ID8": 1}, prices)

    assert "ID2" in text
    assert "Rp 28.000" in text
    assert [action for _, action in buttons] == ["buy:ID1", "buy:ID8"]


def test_catalog_all_sold_out():
    text, buttons = bot.build_catalog({}, {"ID1": 28000})
    assert buttons == []
    assert "sold out" in text


def test_parse_price_list():
    assert config.parse_price_list("ID1=28000, ID2=25 000,") == {"ID1": 28000, "ID2": 25000}
    with pytest.raises(ValueError):
        config.parse_price_list("ID1")
    with pytest.raises(ValueError):
        config.parse_price_list("ID1=0")


# ============================================================================
# WEBHOOK ОПЛАТЫ
# ============================================================================

@pytest.mark.asyncio
async def test_payment_webhook_answers_before_processing(mock_checkout):
    release = asyncio.Event()

    async def slow(notification):
        await release.wait()
        return DeliveryOutcome.DELIVERED

    mock_checkout.handle_payment_notification.side_effect = slow

    async with TestClient(TestServer(bot.create_web_app())) as client:
        resp = await client.post(
            f"/payment/webhook/{SECRET}",
            json={"order_id": "INV-1", "amount": 9000, "status": "completed"},
        )
        assert resp.status == 200
        assert await resp.json() == {"ok": True}
        assert bot.BACKGROUND_TASKS

        release.set()
        await drain_background()

    notification = mock_checkout.handle_payment_notification.await_args.args[0]
    assert notification == PaymentNotification(order_id="INV-1", amount=9000, status="completed")


@pytest.mark.asyncio
async def test_payment_webhook_wrong_secret(mock_checkout):
    async with TestClient(TestServer(bot.create_web_app())) as client:
        resp = await client.post("/payment/webhook/guess", json={"order_id": "INV-1", "amount": 9000})
        assert resp.status == 403

    mock_checkout.handle_payment_notification.assert_not_awaited()


@pytest.mark.asyncio
async def test_payment_webhook_malformed_body_is_acknowledged(mock_checkout):
    async with TestClient(TestServer(bot.create_web_app())) as client:
        resp = await client.post(f"/payment/webhook/{SECRET}", data="not json")
        assert resp.status == 200
        resp = await client.post(f"/payment/webhook/{SECRET}", json={"amount": 9000})
        assert resp.status == 200
        await drain_background()

    mock_checkout.handle_payment_notification.assert_not_awaited()


@pytest.mark.asyncio
async def test_health(mock_checkout):
    async with TestClient(TestServer(bot.create_web_app())) as client:
        resp = await client.get("/health")
        assert resp.status == 200
        assert (await resp.json())["status"] == "ok"


# ============================================================================
# ФОНОВАЯ ОБРАБОТКА
# ============================================================================

@pytest.mark.asyncio
async def test_unconfirmed_webhook_is_dropped(mock_checkout):
    mock_checkout.gateway.query_status.return_value = "pending"

    await bot.process_payment_callback(PaymentNotification("INV-1", 9000, "completed"))

    mock_checkout.gateway.query_status.assert_awaited_once_with("INV-1", 9000)
    mock_checkout.handle_payment_notification.assert_not_awaited()


@pytest.mark.asyncio
async def test_verification_error_is_logged_not_raised(mock_checkout):
    mock_checkout.gateway.query_status.side_effect = AdapterError("timeout")

    await bot.process_payment_callback(PaymentNotification("INV-1", 9000, "completed"))

    mock_checkout.handle_payment_notification.assert_not_awaited()


@pytest.mark.asyncio
async def test_verification_can_be_disabled(mock_checkout):
    with patch("config.VERIFY_WEBHOOK_VIA_API", False):
        await bot.process_payment_callback(PaymentNotification("INV-1", 9000, "completed"))

    mock_checkout.gateway.query_status.assert_not_awaited()
    mock_checkout.handle_payment_notification.assert_awaited_once()


@pytest.mark.asyncio
async def test_store_outage_alerts_admin(mock_checkout):
    mock_checkout.handle_payment_notification.side_effect = StoreUnavailable("sheets down")

    await bot.process_payment_callback(PaymentNotification("INV-1", 9000, "completed"))

    mock_checkout.notifier.alert_admin.assert_awaited_once()
    assert "INV-1" in mock_checkout.notifier.alert_admin.await_args.args[0]


# ============================================================================
# ОБРАБОТЧИКИ TELEGRAM
# ============================================================================

def make_update(user_id, data=None):
    update = MagicMock()
    update.effective_user.id = user_id
    update.message.reply_text = AsyncMock()
    update.effective_message.reply_text = AsyncMock()
    update.callback_query.from_user.id = user_id
    update.callback_query.data = data
    update.callback_query.answer = AsyncMock()
    update.callback_query.message.reply_text = AsyncMock()
    return update


@pytest.mark.asyncio
async def test_check_button_with_store_failure_reaches_admin(store, shop, ledger, notifier):
    await store.seed("A", [["code"], ["X1"]])
    await ledger.create(Order(order_id="INV-1", buyer_id=42, group_id="A", amount=9000))
    update = make_update(42, "check:INV-1")

    with patch("bot.checkout", shop), \
            patch.object(shop.inventory, "take_one", AsyncMock(side_effect=StoreUnavailable("sheets down"))):
        await bot.button_check(update, MagicMock())

    notifier.alert_admin.assert_awaited_once()
    assert "INV-1" in notifier.alert_admin.await_args.args[0]
    assert "CLAIMED" in update.callback_query.message.reply_text.await_args.args[0]

    # the stalled order shows up for the admin
    admin = make_update(1)
    with patch("bot.checkout", shop), patch("config.ADMIN_CHAT_ID", 1):
        await bot.cmd_orders(admin, MagicMock())
    text = admin.message.reply_text.await_args.args[0]
    assert "INV-1" in text
    assert "CLAIMED" in text


@pytest.mark.asyncio
async def test_start_shows_users_and_completed_orders(store, shop, ledger):
    await store.seed("A", [["code"], ["X1"]])
    await ledger.create(Order(order_id="INV-1", buyer_id=7, group_id="A", amount=9000))
    await ledger.transition("INV-1", OrderStatus.PAID)
    registry = UserRegistry(store)
    update = make_update(42)

    with patch("bot.checkout", shop), patch("bot.users", registry):
        await bot.track_user(update, MagicMock())
        await bot.start(update, MagicMock())

    welcome = update.message.reply_text.await_args_list[0].args[0]
    assert "Bot users:</b> 1" in welcome
    assert "Completed orders:</b> 1" in welcome
    update.effective_message.reply_text.assert_awaited_once()


@pytest.mark.asyncio
async def test_track_user_survives_store_outage():
    registry = MagicMock()
    registry.touch = AsyncMock(side_effect=StoreUnavailable("sheets down"))
    with patch("bot.users", registry):
        await bot.track_user(make_update(42), MagicMock())
    registry.touch.assert_awaited_once_with(42)


def test_render_stats():
    text = bot.render_stats(5, 3, [("2026-10-01", 2), ("2026-10-03", 1)])
    assert "Users:</b> 5" in text
    assert "2026-10-01</code> ██ 2" in text
    assert "No completed orders yet." in bot.render_stats(0, 0, [])
