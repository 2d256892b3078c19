"""
Shared fixtures for the TradePort deal and exchange test suites.

Key Components:
1. Per-test database (SQLite file under tmp_path, or TEST_DATABASE_URL for PostgreSQL)
2. Notification recorder replacing the persistent sender
3. Deal, balance and trading pair factories
"""

import logging
import os
import uuid
from decimal import Decimal
from types import SimpleNamespace
from typing import List, Optional

import pytest
import pytest_asyncio

from config import Config
from database import configure_database, create_tables, drop_tables
from services.deal_service import DealParty, DealProduct, DealService, MilestoneTerms
from services.exchange_balance_ledger import ExchangeBalanceLedger
from services.matching_engine import MatchingEngine
from services.notification_dispatcher import NotificationRequest, notification_dispatcher

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

BUYER = "0xb0b0000000000000000000000000000000000001"
SELLER = "0x5e11e00000000000000000000000000000000002"
OUTSIDER = "0x0075100000000000000000000000000000000003"
ADMIN = "0xad31400000000000000000000000000000000004"
ARBITER = "0xa7b1700000000000000000000000000000000005"

# Stage path from draft to delivered with the party allowed to take each step
PATH_TO_DELIVERED = [
    (BUYER, "loi_pending"),
    (SELLER, "loi_signed"),
    (BUYER, "escrow_pending"),
    (BUYER, "escrow_funded"),
    (SELLER, "in_production"),
    (SELLER, "quality_check"),
    (SELLER, "shipping"),
    (SELLER, "delivered"),
]


class NotificationRecorder:
    """Collects notifications instead of queueing them"""

    def __init__(self):
        self.sent: List[NotificationRequest] = []

    async def __call__(self, request: NotificationRequest):
        self.sent.append(request)

    async def wait(self):
        await notification_dispatcher.drain()
        return self.sent

    def of_type(self, notification_type: str, recipient: Optional[str] = None) -> List[NotificationRequest]:
        return [
            n for n in self.sent
            if n.notification_type == notification_type and (recipient is None or n.recipient_wallet == recipient)
        ]


@pytest_asyncio.fixture
async def database(tmp_path):
    """Fresh schema per test"""
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'tradeport_test.db'}"
    engine = configure_database(url)
    await create_tables(engine)
    yield engine
    await notification_dispatcher.drain()
    await drop_tables(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def notifications(database):
    recorder = NotificationRecorder()
    previous_sender = notification_dispatcher._sender
    notification_dispatcher.set_sender(recorder)
    yield recorder
    await notification_dispatcher.drain()
    notification_dispatcher.set_sender(previous_sender)


@pytest.fixture
def parties(monkeypatch):
    monkeypatch.setattr(Config, "PLATFORM_ADMIN_WALLETS", [ADMIN])
    return SimpleNamespace(buyer=BUYER, seller=SELLER, outsider=OUTSIDER, admin=ADMIN, arbiter=ARBITER)


@pytest.fixture
def zero_fees(monkeypatch):
    """Trade without fees so balances can be compared exactly"""
    monkeypatch.setattr(Config, "EXCHANGE_TRADING_FEE_PERCENT", Decimal("0"))


@pytest.fixture
def make_deal(notifications, parties):
    """Create a deal between the standard buyer and seller (total value 1000 USDC by default)"""

    async def _make_deal(milestones: Optional[List[MilestoneTerms]] = None, quantity="100", unit_price="10",
                         seller: str = SELLER):
        return await DealService.create_deal(
            caller_wallet=BUYER,
            buyer=DealParty(wallet=BUYER, company="Acme Imports Ltd", country="NG"),
            seller=DealParty(wallet=seller, company="Global Cocoa Exports", country="GH"),
            product=DealProduct(name="Cocoa Beans", quantity=quantity, unit="MT", unit_price=unit_price,
                                currency="USDC", category="agriculture"),
            milestones=milestones,
        )

    return _make_deal


@pytest.fixture
def advance_deal(notifications):
    """Walk a deal along PATH_TO_DELIVERED up to and including ``until``"""

    async def _advance(deal_id: int, until: str = "delivered", fund: bool = True):
        deal = None
        for wallet, stage in PATH_TO_DELIVERED:
            if stage == "escrow_funded" and fund:
                current = await DealService.get_deal(deal_id, BUYER)
                await DealService.fund_escrow(
                    deal_id, BUYER, f"0xfund{deal_id}{uuid.uuid4().hex[:8]}", current.escrow_amount
                )
            deal = await DealService.request_stage_change(deal_id, wallet, stage)
            if stage == until:
                break
        return deal

    return _advance


@pytest.fixture
def fund_wallet(database):
    """Credit a wallet through a confirmed deposit"""

    async def _fund(wallet: str, token: str, amount):
        return await ExchangeBalanceLedger.confirm_deposit(wallet, token, amount, f"0x{uuid.uuid4().hex}")

    return _fund


@pytest_asyncio.fixture
async def internal_pair(database):
    return await MatchingEngine.register_pair(
        symbol="ETH-USDC",
        base_token="ETH",
        quote_token="USDC",
        min_order_size="0.01",
        price_precision=2,
        quantity_precision=4,
    )


@pytest_asyncio.fixture
async def venue_pair(database):
    return await MatchingEngine.register_pair(
        symbol="BTC-USDT",
        base_token="BTC",
        quote_token="USDT",
        min_order_size="0.0001",
        price_precision=2,
        quantity_precision=6,
        venue_symbol="BTCUSDT",
    )
