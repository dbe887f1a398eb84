import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock

from checkout import CheckoutService
from inventory import InventoryPool
from models import Invoice
from orders import OrderLedger
from sqlite_store import SqliteLedgerStore

PRICES = {"A": 9000, "B": 50000}
ADMIN_ID = 1


@pytest_asyncio.fixture
async def store():
    s = await SqliteLedgerStore(":memory:").open()
    yield s
    await s.close()


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.send_text = AsyncMock(return_value=True)
    mock.send_image = AsyncMock(return_value=True)
    mock.send_invoice = AsyncMock(return_value=True)
    mock.send_item = AsyncMock(return_value=True)
    mock.alert_admin = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def gateway():
    mock = MagicMock()
    mock.name = "mock"
    mock.create_invoice = AsyncMock(
        side_effect=lambda order_id, amount: Invoice(order_id=order_id, amount=amount, pay_code="QRIS-DATA")
    )
    mock.cancel = AsyncMock(return_value=None)
    mock.query_status = AsyncMock(return_value="completed")
    return mock


@pytest.fixture
def inventory(store):
    return InventoryPool(store)


@pytest.fixture
def ledger(store):
    return OrderLedger(store, "Orders")


@pytest.fixture
def shop(inventory, ledger, gateway, notifier):
    return CheckoutService(inventory, ledger, gateway, notifier, dict(PRICES), admin_id=ADMIN_ID)
