"""
Matching engine tests
Placement locks, price-time priority, fills, fees, cancellation and book reads
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from config import Config
from database import async_managed_session
from models import ExchangeOrder, PlatformRevenue
from services.errors import (
    ConflictError, ForbiddenError, InsufficientBalanceError, InvalidTransitionError, NotFoundError,
    ValidationError
)
from services.exchange_balance_ledger import ExchangeBalanceLedger
from services.matching_engine import MatchingEngine
from utils.atomic_transactions import update_if

ALICE = "0xa11ce00000000000000000000000000000000001"
BOB = "0xb0b0000000000000000000000000000000000002"
CAROL = "0xca201000000000000000000000000000000000003"
DAVE = "0xda4e000000000000000000000000000000000004"


async def balance(wallet, token):
    snapshot = await ExchangeBalanceLedger.get_balance(wallet, token)
    return snapshot.available, snapshot.locked


class TestPairs:

    @pytest.mark.asyncio
    async def test_duplicate_pair_conflicts(self, internal_pair):
        with pytest.raises(ConflictError):
            await MatchingEngine.register_pair("eth-usdc", "ETH", "USDC", "0.01")

    @pytest.mark.asyncio
    async def test_pair_validation(self, database):
        with pytest.raises(ValidationError):
            await MatchingEngine.register_pair("USDC-USDC", "USDC", "USDC", "1")
        with pytest.raises(ValidationError):
            await MatchingEngine.register_pair("SOL-USDC", "SOL", "USDC", "0")
        with pytest.raises(ValidationError):
            await MatchingEngine.register_pair("SOL-USDC", "SOL", "USDC", "1", price_precision=19)

    @pytest.mark.asyncio
    async def test_lookup_and_listing(self, internal_pair, venue_pair):
        assert (await MatchingEngine.get_pair("eth-usdc")).id == internal_pair.id
        assert [p.symbol for p in await MatchingEngine.list_pairs()] == ["BTC-USDT", "ETH-USDC"]
        with pytest.raises(NotFoundError):
            await MatchingEngine.get_pair("DOGE-USDC")


class TestPlacementAndCancel:
    """Placement reserves funds, cancellation returns them"""

    @pytest.mark.asyncio
    async def test_limit_buy_locks_quote_and_cancel_unlocks(self, internal_pair, fund_wallet, zero_fees):
        await fund_wallet(ALICE, "USDC", "100")

        result = await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "0.5", "100")
        assert result.trades == []
        assert result.order.status == "open"
        assert result.order.locked_token == "USDC"
        assert Decimal(result.order.locked_amount) == Decimal("50")
        assert await balance(ALICE, "USDC") == (Decimal("50"), Decimal("50"))

        cancelled = await MatchingEngine.cancel_order(ALICE, result.order.id)
        assert cancelled.status == "cancelled"
        assert Decimal(cancelled.locked_amount) == Decimal("0")
        assert await balance(ALICE, "USDC") == (Decimal("100"), Decimal("0"))

        with pytest.raises(InvalidTransitionError):
            await MatchingEngine.cancel_order(ALICE, result.order.id)

    @pytest.mark.asyncio
    async def test_limit_sell_locks_base(self, internal_pair, fund_wallet):
        await fund_wallet(BOB, "ETH", "3")
        await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "limit", "2", "150")
        assert await balance(BOB, "ETH") == (Decimal("1"), Decimal("2"))

    @pytest.mark.asyncio
    async def test_only_owner_cancels(self, internal_pair, fund_wallet):
        await fund_wallet(ALICE, "USDC", "100")
        result = await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "0.5", "100")
        with pytest.raises(ForbiddenError):
            await MatchingEngine.cancel_order(BOB, result.order.id)

    @pytest.mark.asyncio
    async def test_insufficient_balance_leaves_no_order(self, internal_pair, fund_wallet):
        await fund_wallet(ALICE, "USDC", "10")
        with pytest.raises(InsufficientBalanceError):
            await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "1", "100")

        assert await MatchingEngine.get_user_orders(ALICE) == []
        assert await balance(ALICE, "USDC") == (Decimal("10"), Decimal("0"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("side,order_type,quantity,price", [
        ("buy", "limit", "0.001", "100"),  # below minimum size
        ("buy", "limit", "0.12345", "100"),  # too many quantity decimals
        ("buy", "limit", "1", "100.123"),  # too many price decimals
        ("buy", "limit", "1", None),  # limit without price
        ("buy", "market", "1", "100"),  # market with price
        ("hold", "limit", "1", "100"),
        ("buy", "stop", "1", "100"),
        ("buy", "limit", "-1", "100"),
    ])
    async def test_invalid_orders_rejected(self, internal_pair, fund_wallet, side, order_type, quantity, price):
        await fund_wallet(ALICE, "USDC", "1000")
        with pytest.raises(ValidationError):
            await MatchingEngine.place_order(ALICE, "ETH-USDC", side, order_type, quantity, price)

    @pytest.mark.asyncio
    async def test_venue_pairs_not_matched_internally(self, venue_pair, fund_wallet):
        await fund_wallet(ALICE, "USDT", "1000")
        with pytest.raises(ValidationError):
            await MatchingEngine.place_order(ALICE, "BTC-USDT", "buy", "limit", "0.01", "100")

    @pytest.mark.asyncio
    async def test_market_order_without_liquidity(self, internal_pair, fund_wallet):
        await fund_wallet(ALICE, "USDC", "1000")
        await fund_wallet(BOB, "ETH", "1")
        with pytest.raises(ValidationError):
            await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "market", "1")
        with pytest.raises(ValidationError):
            await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "market", "1")


class TestMatching:
    """Price-time priority at the maker's price"""

    @pytest.mark.asyncio
    async def test_market_buy_sweeps_two_levels(self, internal_pair, fund_wallet, zero_fees, monkeypatch):
        monkeypatch.setattr(Config, "MARKET_ORDER_SLIPPAGE_PERCENT", Decimal("12.5"))
        await fund_wallet(BOB, "ETH", "10")
        await fund_wallet(CAROL, "ETH", "5")
        await fund_wallet(ALICE, "USDC", "2000")

        first_sell = (await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "limit", "10", "100")).order
        second_sell = (await MatchingEngine.place_order(CAROL, "ETH-USDC", "sell", "limit", "5", "101")).order

        result = await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "market", "12")

        assert [(Decimal(t.quantity), Decimal(t.price)) for t in result.trades] == [
            (Decimal("10"), Decimal("100")),
            (Decimal("2"), Decimal("101")),
        ]
        assert result.filled_quantity == Decimal("12")
        assert result.order.status == "filled"
        assert Decimal(result.order.filled_quantity) == Decimal("12")
        assert all(t.taker_side == "buy" for t in result.trades)

        orders = {o.id: o for o in await MatchingEngine.get_user_orders(BOB) + await MatchingEngine.get_user_orders(CAROL)}
        assert orders[first_sell.id].status == "filled"
        assert orders[second_sell.id].status == "partial"
        assert Decimal(orders[second_sell.id].filled_quantity) == Decimal("2")

        # Buffered reservation of 1352.25 settles at 1202, the rest is returned
        assert await balance(ALICE, "USDC") == (Decimal("798"), Decimal("0"))
        assert await balance(ALICE, "ETH") == (Decimal("12"), Decimal("0"))
        assert await balance(BOB, "USDC") == (Decimal("1000"), Decimal("0"))
        assert await balance(BOB, "ETH") == (Decimal("0"), Decimal("0"))
        assert await balance(CAROL, "USDC") == (Decimal("202"), Decimal("0"))
        assert await balance(CAROL, "ETH") == (Decimal("0"), Decimal("3"))

    @pytest.mark.asyncio
    async def test_time_priority_at_equal_price(self, internal_pair, fund_wallet, zero_fees):
        await fund_wallet(BOB, "ETH", "5")
        await fund_wallet(CAROL, "ETH", "5")
        await fund_wallet(ALICE, "USDC", "600")

        early = (await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "limit", "5", "100")).order
        late = (await MatchingEngine.place_order(CAROL, "ETH-USDC", "sell", "limit", "5", "100")).order

        result = await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "6", "100")

        assert [(t.sell_order_id, Decimal(t.quantity)) for t in result.trades] == [
            (early.id, Decimal("5")),
            (late.id, Decimal("1")),
        ]
        assert result.order.status == "filled"

    @pytest.mark.asyncio
    async def test_limit_buy_gets_price_improvement(self, internal_pair, fund_wallet, zero_fees):
        await fund_wallet(BOB, "ETH", "1")
        await fund_wallet(ALICE, "USDC", "100")
        await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "limit", "1", "90")

        result = await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "1", "100")

        assert Decimal(result.trades[0].price) == Decimal("90")
        assert result.order.status == "filled"
        assert Decimal(result.order.locked_amount) == Decimal("0")
        assert await balance(ALICE, "USDC") == (Decimal("10"), Decimal("0"))
        assert await balance(ALICE, "ETH") == (Decimal("1"), Decimal("0"))

    @pytest.mark.asyncio
    async def test_partial_limit_fill_rests_remainder(self, internal_pair, fund_wallet, zero_fees):
        await fund_wallet(BOB, "ETH", "1")
        await fund_wallet(ALICE, "USDC", "300")
        await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "limit", "1", "100")

        result = await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "3", "100")

        assert result.order.status == "partial"
        assert Decimal(result.order.filled_quantity) == Decimal("1")
        assert Decimal(result.order.locked_amount) == Decimal("200")
        assert await balance(ALICE, "USDC") == (Decimal("0"), Decimal("200"))

        cancelled = await MatchingEngine.cancel_order(ALICE, result.order.id)
        assert cancelled.status == "cancelled"
        assert await balance(ALICE, "USDC") == (Decimal("200"), Decimal("0"))

    @pytest.mark.asyncio
    async def test_market_sell_remainder_cancelled(self, internal_pair, fund_wallet, zero_fees):
        await fund_wallet(ALICE, "USDC", "200")
        await fund_wallet(BOB, "ETH", "5")
        await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "2", "100")

        result = await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "market", "5")

        assert result.order.status == "cancelled"
        assert Decimal(result.order.filled_quantity) == Decimal("2")
        assert await balance(BOB, "ETH") == (Decimal("3"), Decimal("0"))
        assert await balance(BOB, "USDC") == (Decimal("200"), Decimal("0"))

    @pytest.mark.asyncio
    async def test_filled_maker_returns_residual_lock(self, internal_pair, fund_wallet, zero_fees):
        dust = Decimal("0.0009765625")
        await fund_wallet(ALICE, "USDC", "201")
        await fund_wallet(BOB, "ETH", "2")
        maker = (await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "2", "100")).order

        # Leave a truncation remainder reserved on the resting order
        async with async_managed_session() as session:
            await ExchangeBalanceLedger.lock(session, ALICE, "USDC", dust)
            await update_if(
                session,
                ExchangeOrder,
                where=[ExchangeOrder.id == maker.id],
                values={"locked_amount": ExchangeOrder.locked_amount + dust},
            )

        await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "market", "1")
        await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "market", "1")

        filled = (await MatchingEngine.get_user_orders(ALICE))[0]
        assert filled.status == "filled"
        assert Decimal(filled.locked_amount) == Decimal("0")
        assert await balance(ALICE, "USDC") == (Decimal("1"), Decimal("0"))
        assert await balance(ALICE, "ETH") == (Decimal("2"), Decimal("0"))

    @pytest.mark.asyncio
    async def test_no_self_trade(self, internal_pair, fund_wallet, zero_fees):
        await fund_wallet(ALICE, "ETH", "1")
        await fund_wallet(ALICE, "USDC", "100")

        await MatchingEngine.place_order(ALICE, "ETH-USDC", "sell", "limit", "1", "100")
        result = await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "1", "100")

        assert result.trades == []
        assert result.order.status == "open"

    @pytest.mark.asyncio
    async def test_non_crossing_orders_rest(self, internal_pair, fund_wallet):
        await fund_wallet(BOB, "ETH", "1")
        await fund_wallet(ALICE, "USDC", "100")
        await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "limit", "1", "101")

        result = await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "1", "100")
        assert result.trades == []
        assert result.order.status == "open"

    @pytest.mark.asyncio
    async def test_fees_charged_in_received_token(self, internal_pair, fund_wallet):
        assert Config.EXCHANGE_TRADING_FEE_PERCENT == Decimal("0.1")
        await fund_wallet(BOB, "ETH", "10")
        await fund_wallet(ALICE, "USDC", "1000")
        await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "limit", "10", "100")

        result = await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "10", "100")
        trade = result.trades[0]

        assert Decimal(trade.buyer_fee) == Decimal("0.01")
        assert Decimal(trade.seller_fee) == Decimal("1")

        alice_eth, _ = await balance(ALICE, "ETH")
        bob_usdc, _ = await balance(BOB, "USDC")
        fee_eth, _ = await balance(Config.PLATFORM_FEE_WALLET, "ETH")
        fee_usdc, _ = await balance(Config.PLATFORM_FEE_WALLET, "USDC")
        assert float(alice_eth) == pytest.approx(9.99)
        assert float(bob_usdc) == pytest.approx(999)
        assert float(fee_eth) == pytest.approx(0.01)
        assert float(fee_usdc) == pytest.approx(1)

        async with async_managed_session() as session:
            revenue = (await session.execute(
                select(PlatformRevenue).order_by(PlatformRevenue.id)
            )).scalars().all()
        assert [(r.revenue_type, r.source_id, r.token) for r in revenue] == [
            ("trade_fee", trade.id, "ETH"),
            ("trade_fee", trade.id, "USDC"),
        ]


class TestBookReads:

    @pytest.mark.asyncio
    async def test_order_book_levels(self, internal_pair, fund_wallet):
        await fund_wallet(BOB, "ETH", "6")
        await fund_wallet(ALICE, "USDC", "1000")
        await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "limit", "1", "100")
        await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "limit", "2", "100")
        await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "limit", "3", "101")
        await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "4", "96")

        book = await MatchingEngine.get_order_book("ETH-USDC")

        assert [(level["price"], level["quantity"], level["orders"], level["total"]) for level in book["asks"]] == [
            (Decimal("100"), Decimal("3"), 2, Decimal("3")),
            (Decimal("101"), Decimal("3"), 1, Decimal("6")),
        ]
        assert [(level["price"], level["quantity"]) for level in book["bids"]] == [(Decimal("96"), Decimal("4"))]
        assert book["best_ask"] == Decimal("100")
        assert book["best_bid"] == Decimal("96")
        assert book["spread"] == Decimal("4")
        assert book["mid_price"] == Decimal("98")
        assert book["spread_percent"] == Decimal("4")

    @pytest.mark.asyncio
    async def test_empty_book(self, internal_pair):
        book = await MatchingEngine.get_order_book("ETH-USDC")
        assert book["bids"] == [] and book["asks"] == []
        assert book["spread"] is None

    @pytest.mark.asyncio
    async def test_trade_history_and_ticker(self, internal_pair, fund_wallet, zero_fees):
        await fund_wallet(BOB, "ETH", "3")
        await fund_wallet(ALICE, "USDC", "1000")
        await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "limit", "1", "100")
        await MatchingEngine.place_order(BOB, "ETH-USDC", "sell", "limit", "2", "110")
        await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "1", "100")
        await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "2", "110")

        recent = await MatchingEngine.get_recent_trades("ETH-USDC")
        assert [Decimal(t.price) for t in recent] == [Decimal("110"), Decimal("100")]
        assert len(await MatchingEngine.get_user_trades(BOB)) == 2
        assert await MatchingEngine.get_user_trades(DAVE) == []

        ticker = await MatchingEngine.get_ticker("ETH-USDC")
        assert ticker["last_price"] == Decimal("110")
        assert ticker["high_24h"] == Decimal("110")
        assert ticker["low_24h"] == Decimal("100")
        assert ticker["volume_24h"] == Decimal("3")
        assert ticker["quote_volume_24h"] == Decimal("320")
        assert ticker["change_24h"] == Decimal("10")
        assert ticker["change_percent_24h"] == Decimal("10")
        assert ticker["trade_count_24h"] == 2

    @pytest.mark.asyncio
    async def test_user_orders_filters(self, internal_pair, fund_wallet):
        await fund_wallet(ALICE, "USDC", "1000")
        first = (await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "1", "90")).order
        second = (await MatchingEngine.place_order(ALICE, "ETH-USDC", "buy", "limit", "1", "95")).order
        await MatchingEngine.cancel_order(ALICE, first.id)

        active = await MatchingEngine.get_user_orders(ALICE, symbol="ETH-USDC", status="active")
        assert [o.id for o in active] == [second.id]
        cancelled = await MatchingEngine.get_user_orders(ALICE, status="cancelled")
        assert [o.id for o in cancelled] == [first.id]
