"""
Venue relay tests
Relayed market orders against a mocked MEXC client: lock, settle or fail, reconcile
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from config import Config
from database import async_managed_session
from main import StartupManager
from models import PlatformRevenue, TradingPair, VenueTrade
from services.errors import InsufficientBalanceError, UpstreamFailureError, ValidationError, VenueOutcomeUnknownError
from services.exchange_balance_ledger import ExchangeBalanceLedger
from services.exchange_markup_service import ExchangeMarkupService
from services.mexc_service import MEXC_PAIR_CONFIG, MexcService, VenueOrderResult
from services.venue_relay import VenueRelay, seed_venue_pairs

TRADER = "0x7a0de00000000000000000000000000000000001"


def mock_venue(ask="2000", executed_price="2000", executed_quantity="1", success=True):
    venue = MagicMock()
    venue.get_ask_price = AsyncMock(return_value=Decimal(ask))
    if success:
        result = VenueOrderResult(
            success=True,
            executed_quantity=Decimal(executed_quantity),
            executed_price=Decimal(executed_price),
            order_id="C02__123456789",
        )
    else:
        result = VenueOrderResult(success=False, error="Oversold")
    venue.execute_market_order = AsyncMock(return_value=result)
    return venue


@pytest.fixture
def relay_with(monkeypatch):
    """Relay on a 0.5% spread with no flat fee and a 12.5% buy buffer"""
    monkeypatch.setattr(Config, "MARKET_ORDER_SLIPPAGE_PERCENT", Decimal("12.5"))

    def _relay(venue):
        return VenueRelay(venue=venue, markup_service=ExchangeMarkupService(Decimal("0.5"), Decimal("0")))

    return _relay


async def balance(wallet, token):
    snapshot = await ExchangeBalanceLedger.get_balance(wallet, token)
    return snapshot.available, snapshot.locked


class TestRelayedBuys:
    """Quote is locked with a buffer and the unused part returned on settlement"""

    @pytest.mark.asyncio
    async def test_buy_settles_and_books_markup(self, venue_pair, fund_wallet, relay_with):
        await fund_wallet(TRADER, "USDT", "5000")
        venue = mock_venue()
        relay = relay_with(venue)

        trade = await relay.execute_market_order(TRADER, "btc-usdt", "buy", "1")

        venue.execute_market_order.assert_awaited_once_with("BTCUSDT", "buy", Decimal("1"))
        assert trade.status == "settled"
        assert trade.venue_order_id == "C02__123456789"
        assert Decimal(trade.locked_amount) == Decimal("2261.25")
        assert Decimal(trade.spent_amount) == Decimal("2010")
        assert Decimal(trade.platform_revenue) == Decimal("10")

        assert await balance(TRADER, "USDT") == (Decimal("2990"), Decimal("0"))
        assert await balance(TRADER, "BTC") == (Decimal("1"), Decimal("0"))
        assert await balance(Config.PLATFORM_FEE_WALLET, "USDT") == (Decimal("10"), Decimal("0"))

        async with async_managed_session() as session:
            revenue = (await session.execute(select(PlatformRevenue))).scalars().all()
        assert [(r.revenue_type, r.source_type, r.source_id, r.token) for r in revenue] == [
            ("venue_markup", "venue_trade", trade.id, "USDT")
        ]

    @pytest.mark.asyncio
    async def test_buy_needs_buffered_balance(self, venue_pair, fund_wallet, relay_with):
        await fund_wallet(TRADER, "USDT", "2100")
        venue = mock_venue()

        with pytest.raises(InsufficientBalanceError):
            await relay_with(venue).execute_market_order(TRADER, "BTC-USDT", "buy", "1")
        venue.execute_market_order.assert_not_awaited()
        assert await balance(TRADER, "USDT") == (Decimal("2100"), Decimal("0"))

    @pytest.mark.asyncio
    async def test_venue_failure_returns_lock(self, venue_pair, fund_wallet, relay_with):
        await fund_wallet(TRADER, "USDT", "5000")
        relay = relay_with(mock_venue(success=False))

        with pytest.raises(UpstreamFailureError) as exc_info:
            await relay.execute_market_order(TRADER, "BTC-USDT", "buy", "1")
        assert exc_info.value.is_retryable is True

        assert await balance(TRADER, "USDT") == (Decimal("5000"), Decimal("0"))
        async with async_managed_session() as session:
            trade = (await session.execute(select(VenueTrade))).scalar_one()
        assert trade.status == "failed"
        assert trade.error_message == "Oversold"
        assert await relay.list_unsettled_venue_trades() == []

    @pytest.mark.asyncio
    async def test_unknown_outcome_left_for_reconciliation(self, venue_pair, fund_wallet, relay_with):
        await fund_wallet(TRADER, "USDT", "5000")
        venue = mock_venue()
        venue.execute_market_order = AsyncMock(side_effect=RuntimeError("connection reset"))
        relay = relay_with(venue)

        with pytest.raises(RuntimeError):
            await relay.execute_market_order(TRADER, "BTC-USDT", "buy", "1")

        assert await balance(TRADER, "USDT") == (Decimal("2738.75"), Decimal("2261.25"))
        unsettled = await relay.list_unsettled_venue_trades()
        assert [t.status for t in unsettled] == ["submitted"]
        assert unsettled[0].wallet_address == TRADER
        assert await relay.list_unsettled_venue_trades(older_than_seconds=3600) == []

    @pytest.mark.asyncio
    async def test_acknowledged_order_with_lost_fill_keeps_lock(self, venue_pair, fund_wallet, relay_with):
        await fund_wallet(TRADER, "BTC", "1.5")
        mexc = MexcService(api_key="test-api-key", secret_key="test-secret", max_retries=1)
        responses = [{"orderId": "777"}, UpstreamFailureError("MEXC /api/v3/order unavailable")]
        relay = relay_with(mexc)

        with patch.object(mexc, "_request", AsyncMock(side_effect=responses)):
            with pytest.raises(VenueOutcomeUnknownError) as exc_info:
                await relay.execute_market_order(TRADER, "BTC-USDT", "sell", "1")
        assert exc_info.value.venue_order_id == "777"

        assert await balance(TRADER, "BTC") == (Decimal("0.5"), Decimal("1"))
        unsettled = await relay.list_unsettled_venue_trades()
        assert [(t.status, t.venue_order_id) for t in unsettled] == [("submitted", "777")]
        assert "777" in unsettled[0].error_message


class TestRelayedSells:

    @pytest.mark.asyncio
    async def test_sell_credits_marked_down_proceeds(self, venue_pair, fund_wallet, relay_with):
        await fund_wallet(TRADER, "BTC", "1.5")
        relay = relay_with(mock_venue())

        trade = await relay.execute_market_order(TRADER, "BTC-USDT", "sell", "1")

        assert trade.status == "settled"
        assert trade.received_token == "USDT"
        assert Decimal(trade.received_amount) == Decimal("1990")
        assert await balance(TRADER, "BTC") == (Decimal("0.5"), Decimal("0"))
        assert await balance(TRADER, "USDT") == (Decimal("1990"), Decimal("0"))
        assert await balance(Config.PLATFORM_FEE_WALLET, "USDT") == (Decimal("10"), Decimal("0"))


class TestRelayValidation:

    @pytest.mark.asyncio
    async def test_rejects_bad_orders(self, venue_pair, internal_pair, fund_wallet, relay_with):
        await fund_wallet(TRADER, "USDT", "5000")
        relay = relay_with(mock_venue())

        with pytest.raises(ValidationError):
            await relay.execute_market_order(TRADER, "BTC-USDT", "buy", "0.00001")
        with pytest.raises(ValidationError):
            await relay.execute_market_order(TRADER, "BTC-USDT", "hold", "1")
        with pytest.raises(ValidationError):
            await relay.execute_market_order(TRADER, "ETH-USDC", "buy", "1")

    @pytest.mark.asyncio
    async def test_marked_up_ticker_and_depth(self, venue_pair, relay_with):
        venue = mock_venue()
        venue.get_ticker = AsyncMock(return_value={
            "symbol": "BTCUSDT",
            "last_price": Decimal("2000"),
            "ask_price": Decimal("2001"),
            "bid_price": Decimal("1999"),
            "high_price": None,
            "low_price": None,
        })
        venue.get_depth = AsyncMock(return_value={
            "bids": [[Decimal("1999"), Decimal("1")]],
            "asks": [[Decimal("2001"), Decimal("2")]],
        })
        relay = relay_with(venue)

        ticker = await relay.get_ticker("BTC-USDT")
        assert ticker["symbol"] == "BTC-USDT"
        assert ticker["last_price"] == Decimal("2010")
        assert ticker["ask_price"] == Decimal("2011.005")
        assert ticker["bid_price"] == Decimal("1989.005")
        assert ticker["high_price"] is None
        assert ticker["markup_percent"] == Decimal("0.5")

        book = await relay.get_order_book("BTC-USDT")
        assert book["best_bid"] == Decimal("1989.005")
        assert book["best_ask"] == Decimal("2011.005")
        assert book["spread"] == Decimal("22")


class TestVenuePairSeeding:

    @pytest.mark.asyncio
    async def test_seeding_is_idempotent(self, database):
        created = await seed_venue_pairs()
        assert len(created) == len(MEXC_PAIR_CONFIG)
        assert {p.symbol for p in created} >= {"ETH-USDC", "BTC-USDT", "USDT-USDC"}
        assert all(p.venue_symbol for p in created)

        assert await seed_venue_pairs() == []

    @pytest.mark.asyncio
    async def test_startup_creates_schema_and_pairs(self, database):
        manager = StartupManager()
        assert await manager.initialize_database() is True
        assert await manager.seed_trading_pairs() is True
        assert manager.startup_errors == []

        async with async_managed_session() as session:
            pairs = (await session.execute(select(TradingPair))).scalars().all()
        assert len(pairs) == len(MEXC_PAIR_CONFIG)
