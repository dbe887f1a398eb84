"""
Конфигурация магазина из переменных окружения (.env).
"""

import os
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

# ============================================================================
# TELEGRAM
# ============================================================================

TELEGRAM_BOT_TOKEN = os.getenv('TELEGRAM_BOT_TOKEN')
ADMIN_CHAT_ID = int(os.getenv('ADMIN_CHAT_ID', 0))
TELEGRAM_MODE = os.getenv('TELEGRAM_MODE', 'polling').lower()  # polling | webhook
TELEGRAM_WEBHOOK_SECRET = os.getenv('TELEGRAM_WEBHOOK_SECRET', '')
PUBLIC_URL = os.getenv('PUBLIC_URL', '').rstrip('/')
WEBHOOK_PORT = int(os.getenv('WEBHOOK_PORT', 8080))

# ============================================================================
# ХРАНИЛИЩЕ
# ============================================================================

STORE_BACKEND = os.getenv('STORE_BACKEND', 'sheets').lower()  # sheets | sqlite
GOOGLE_SHEET_ID = os.getenv('GOOGLE_SHEET_ID')
GOOGLE_CREDS_FILE = os.getenv('GOOGLE_CREDS_FILE', 'creds.json')
SQLITE_PATH = os.getenv('SQLITE_PATH', 'shop.db')
ORDERS_TAB = os.getenv('ORDERS_TAB', 'Orders')
USERS_TAB = os.getenv('USERS_TAB', 'Users')

# Retry параметры
MAX_RETRIES = int(os.getenv('MAX_RETRIES', 3))
RETRY_DELAY = float(os.getenv('RETRY_DELAY', 2))  # секунды
RETRY_BACKOFF = float(os.getenv('RETRY_BACKOFF', 1.5))  # экспоненциальная задержка

# ============================================================================
# КАТАЛОГ
# ============================================================================

DEFAULT_PRICE_LIST = "ID1=28000,ID2=25000,ID3=23000,ID4=20000,ID5=18000,ID6=15000,ID7=10000,ID8=9000"


def parse_price_list(raw: str) -> Dict[str, int]:
    """'ID1=28000, ID2=25 000' -> {'ID1': 28000, 'ID2': 25000} (order preserved)"""
    prices = {}
    for chunk in raw.split(','):
        if not chunk.strip():
            continue
        if '=' not in chunk:
            raise ValueError(f"PRICE_LIST: ожидается GROUP=PRICE, получено '{chunk.strip()}'")
        group, price = chunk.split('=', 1)
        group = group.strip()
        price = int(price.replace(' ', '').strip())
        if not group or price <= 0:
            raise ValueError(f"PRICE_LIST: некорректная позиция '{chunk.strip()}'")
        prices[group] = price
    return prices


PRICE_BY_GROUP = parse_price_list(os.getenv('PRICE_LIST', DEFAULT_PRICE_LIST))
CURRENCY = os.getenv('CURRENCY', 'Rp')

# ============================================================================
# ПЛАТЕЖИ
# ============================================================================

PAYMENT_GATEWAY = os.getenv('PAYMENT_GATEWAY', 'pakasir').lower()  # pakasir | yookassa
PAYMENT_WEBHOOK_SECRET = os.getenv('PAYMENT_WEBHOOK_SECRET', '')
VERIFY_WEBHOOK_VIA_API = os.getenv('VERIFY_WEBHOOK_VIA_API', '1') == '1'

PAKASIR_BASE_URL = os.getenv('PAKASIR_BASE_URL', 'https://app.pakasir.com').rstrip('/')
PAKASIR_SLUG = os.getenv('PAKASIR_SLUG')
PAKASIR_API_KEY = os.getenv('PAKASIR_API_KEY')

YOOKASSA_SHOP_ID = os.getenv('YOOKASSA_SHOP_ID')
YOOKASSA_API_KEY = os.getenv('YOOKASSA_API_KEY')
YOOKASSA_PAYMENTS_FILE = os.getenv('YOOKASSA_PAYMENTS_FILE', 'pending_payments.json')
BOT_RETURN_URL = os.getenv('BOT_RETURN_URL', 'https://t.me/')

# ============================================================================
# ЛОГИРОВАНИЕ
# ============================================================================

LOG_FILE = os.getenv('LOG_FILE', 'bot.log')


def validate_config() -> None:
    """Проверка обязательных параметров (вызывается из main, не при импорте)."""
    missing: List[str] = []
    if not TELEGRAM_BOT_TOKEN:
        missing.append('TELEGRAM_BOT_TOKEN')
    if not ADMIN_CHAT_ID:
        missing.append('ADMIN_CHAT_ID')
    if not PAYMENT_WEBHOOK_SECRET:
        missing.append('PAYMENT_WEBHOOK_SECRET')

    if STORE_BACKEND == 'sheets':
        if not GOOGLE_SHEET_ID:
            missing.append('GOOGLE_SHEET_ID')
    elif STORE_BACKEND != 'sqlite':
        raise ValueError(f"❌ STORE_BACKEND должен быть sheets или sqlite, получено: {STORE_BACKEND}")

    if PAYMENT_GATEWAY == 'pakasir':
        if not PAKASIR_SLUG:
            missing.append('PAKASIR_SLUG')
        if not PAKASIR_API_KEY:
            missing.append('PAKASIR_API_KEY')
    elif PAYMENT_GATEWAY == 'yookassa':
        if not YOOKASSA_SHOP_ID:
            missing.append('YOOKASSA_SHOP_ID')
        if not YOOKASSA_API_KEY:
            missing.append('YOOKASSA_API_KEY')
    else:
        raise ValueError(f"❌ PAYMENT_GATEWAY должен быть pakasir или yookassa, получено: {PAYMENT_GATEWAY}")

    if TELEGRAM_MODE == 'webhook' and (not PUBLIC_URL or not TELEGRAM_WEBHOOK_SECRET):
        missing.append('PUBLIC_URL/TELEGRAM_WEBHOOK_SECRET')

    if missing:
        raise ValueError(f"❌ Не установлены в .env: {', '.join(missing)}")
