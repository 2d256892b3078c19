"""
External Venue Relay
Executes market orders on MEXC for venue-backed pairs and reconciles platform balances

The venue call cannot join a database transaction, so every relayed order first
commits a ``venue_trades`` row in ``submitted`` together with the balance lock.
The row then becomes ``settled`` (fill credited, revenue booked) or ``failed``
(lock returned). Rows left in ``submitted`` are surfaced by
``list_unsettled_venue_trades`` for operator reconciliation.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from database import async_managed_session
from config import Config
from models import OrderSide, PlatformRevenue, TradingPair, VenueTrade, VenueTradeStatus, utc_now
from services.errors import (
    ConflictError,
    UnauthorizedError,
    UpstreamFailureError,
    ValidationError,
    VenueOutcomeUnknownError,
)
from services.exchange_balance_ledger import ExchangeBalanceLedger
from services.exchange_markup_service import ExchangeMarkupService
from services.matching_engine import MatchingEngine
from services.mexc_service import MEXC_PAIR_CONFIG, MexcService, get_mexc_service
from utils.atomic_transactions import update_if
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


class VenueRelay:
    """Relays market orders on venue-backed pairs to the external venue"""

    def __init__(self, venue: Optional[MexcService] = None, markup_service: Optional[ExchangeMarkupService] = None):
        self._venue = venue
        self.markup = markup_service or ExchangeMarkupService()

    @property
    def venue(self) -> MexcService:
        if self._venue is None:
            self._venue = get_mexc_service()
        return self._venue

    async def _venue_pair(self, symbol: str) -> TradingPair:
        pair = await MatchingEngine.get_pair(symbol)
        if not pair.venue_symbol:
            raise ValidationError(f"{pair.symbol} is not venue-backed", details={"symbol": pair.symbol})
        if not pair.is_active:
            raise ValidationError(f"Trading pair {pair.symbol} is not active")
        return pair

    async def execute_market_order(self, wallet_address: str, symbol: str, side: str, quantity) -> VenueTrade:
        """
        Lock, submit to the venue, then settle or roll back.

        Buys lock ``qty * marked-up ask * (1 + fee) * (1 + slippage)`` of quote; sells
        lock ``qty`` of base. A definite venue rejection unlocks before
        UpstreamFailureError is raised; an unknown outcome keeps the lock and the
        ``submitted`` row and propagates VenueOutcomeUnknownError.
        """
        wallet = (wallet_address or "").strip().lower()
        if not wallet:
            raise UnauthorizedError()
        side = (side or "").strip().lower()
        if side not in (OrderSide.BUY.value, OrderSide.SELL.value):
            raise ValidationError(f"Unknown order side '{side}'", details={"field": "side"})

        pair = await self._venue_pair(symbol)
        quantity = MonetaryDecimal.to_positive(quantity, "quantity")
        MonetaryDecimal.check_precision(quantity, pair.quantity_precision, "quantity")
        if quantity < Decimal(pair.min_order_size):
            raise ValidationError(
                f"Minimum quantity is {Decimal(pair.min_order_size).normalize()} {pair.base_token}",
                details={"field": "quantity", "min_order_size": str(pair.min_order_size)},
            )

        if side == OrderSide.BUY.value:
            ask = await self.venue.get_ask_price(pair.venue_symbol)
            locked_token = pair.quote_token
            lock_amount = self.markup.estimate_buy_lock(quantity, ask)
        else:
            locked_token = pair.base_token
            lock_amount = MonetaryDecimal.quantize_ledger(quantity)

        venue_trade = await self._reserve(wallet, pair, side, quantity, locked_token, lock_amount)
        try:
            result = await self.venue.execute_market_order(pair.venue_symbol, side, quantity)
        except VenueOutcomeUnknownError as e:
            await self._mark_unknown(venue_trade, e)
            raise

        if not result.success:
            await self._fail(venue_trade, result.error or "unknown venue error", result.order_id)
            raise UpstreamFailureError(
                f"Venue order failed: {result.error}",
                error_code="venue_order_failed",
                details={"venue_trade_id": venue_trade.id, "symbol": pair.symbol},
            )

        try:
            return await self._settle(venue_trade, pair, result.executed_quantity, result.executed_price,
                                      result.order_id)
        except Exception as e:
            logger.critical(
                f"🚨 VENUE_SETTLEMENT_FAILED: venue_trade={venue_trade.id} order={result.order_id} "
                f"left in submitted for reconciliation: {e}"
            )
            raise

    async def _reserve(
        self, wallet: str, pair: TradingPair, side: str, quantity: Decimal, locked_token: str, lock_amount: Decimal
    ) -> VenueTrade:
        async with async_managed_session() as session:
            await ExchangeBalanceLedger.lock(session, wallet, locked_token, lock_amount)
            venue_trade = VenueTrade(
                wallet_address=wallet,
                pair_id=pair.id,
                venue_symbol=pair.venue_symbol,
                side=side,
                quantity=quantity,
                locked_token=locked_token,
                locked_amount=lock_amount,
                status=VenueTradeStatus.SUBMITTED.value,
                created_at=utc_now(),
            )
            session.add(venue_trade)
            await session.flush()

        logger.info(
            f"VENUE_ORDER_SUBMITTED: id={venue_trade.id} {pair.venue_symbol} {side} qty={quantity} "
            f"locked={lock_amount} {locked_token} wallet={wallet}"
        )
        return venue_trade

    async def _fail(self, venue_trade: VenueTrade, error: str, venue_order_id: Optional[str] = None):
        async with async_managed_session() as session:
            updated = await update_if(
                session,
                VenueTrade,
                where=[VenueTrade.id == venue_trade.id, VenueTrade.status == VenueTradeStatus.SUBMITTED.value],
                values={
                    "status": VenueTradeStatus.FAILED.value,
                    "venue_order_id": venue_order_id,
                    "error_message": error[:1000],
                },
            )
            if updated != 1:
                raise ConflictError(f"Venue trade {venue_trade.id} is no longer pending")
            await ExchangeBalanceLedger.unlock(
                session, venue_trade.wallet_address, venue_trade.locked_token, venue_trade.locked_amount
            )
        logger.error(
            f"❌ VENUE_ORDER_FAILED: id={venue_trade.id} returned {venue_trade.locked_amount} "
            f"{venue_trade.locked_token} to {venue_trade.wallet_address}: {error}"
        )

    async def _mark_unknown(self, venue_trade: VenueTrade, error: VenueOutcomeUnknownError):
        """Keep the lock and the ``submitted`` status; record what the venue acknowledged"""
        async with async_managed_session() as session:
            await update_if(
                session,
                VenueTrade,
                where=[VenueTrade.id == venue_trade.id, VenueTrade.status == VenueTradeStatus.SUBMITTED.value],
                values={"venue_order_id": error.venue_order_id, "error_message": error.message[:1000]},
            )
        logger.critical(
            f"🚨 VENUE_OUTCOME_UNKNOWN: id={venue_trade.id} order={error.venue_order_id} keeps "
            f"{venue_trade.locked_amount} {venue_trade.locked_token} locked for reconciliation: {error.message}"
        )

    async def _settle(
        self,
        venue_trade: VenueTrade,
        pair: TradingPair,
        executed_quantity: Decimal,
        executed_price: Decimal,
        venue_order_id: Optional[str],
    ) -> VenueTrade:
        wallet = venue_trade.wallet_address
        locked = Decimal(venue_trade.locked_amount)
        executed_quantity = MonetaryDecimal.quantize_ledger(min(executed_quantity, Decimal(venue_trade.quantity)))
        quote = self.markup.quote(venue_trade.side, executed_quantity, executed_price)
        venue_value = MonetaryDecimal.quantize_ledger(executed_quantity * executed_price)

        if venue_trade.side == OrderSide.BUY.value:
            spent = quote.settlement_amount
            if spent > locked:
                logger.warning(
                    f"⚠️ VENUE_COST_CAPPED: id={venue_trade.id} cost={spent} exceeds lock={locked}, "
                    f"charging the locked amount"
                )
                spent = locked
            received_token, received_amount = pair.base_token, executed_quantity
            revenue = quote.platform_revenue if spent == quote.settlement_amount else max(spent - venue_value, Decimal("0"))
        else:
            spent = executed_quantity
            received_token, received_amount = pair.quote_token, quote.settlement_amount
            revenue = quote.platform_revenue

        async with async_managed_session() as session:
            updated = await update_if(
                session,
                VenueTrade,
                where=[VenueTrade.id == venue_trade.id, VenueTrade.status == VenueTradeStatus.SUBMITTED.value],
                values={
                    "status": VenueTradeStatus.SETTLED.value,
                    "venue_order_id": venue_order_id,
                    "executed_quantity": executed_quantity,
                    "executed_price": executed_price,
                    "received_token": received_token,
                    "received_amount": received_amount,
                    "spent_amount": spent,
                    "markup_revenue": quote.markup_revenue,
                    "fee_revenue": quote.fee,
                    "platform_revenue": revenue,
                    "settled_at": utc_now(),
                },
            )
            if updated != 1:
                raise ConflictError(f"Venue trade {venue_trade.id} is no longer pending")

            await ExchangeBalanceLedger.settle(
                session, wallet, venue_trade.locked_token, spent, received_token, received_amount
            )
            leftover = locked - spent
            if leftover > 0:
                await ExchangeBalanceLedger.unlock(session, wallet, venue_trade.locked_token, leftover)

            if revenue > 0:
                await ExchangeBalanceLedger.credit(session, Config.PLATFORM_FEE_WALLET, pair.quote_token, revenue)
                session.add(PlatformRevenue(
                    revenue_type="venue_markup",
                    source_type="venue_trade",
                    source_id=venue_trade.id,
                    token=pair.quote_token,
                    amount=revenue,
                    created_at=utc_now(),
                ))

            settled = (await session.execute(
                select(VenueTrade).where(VenueTrade.id == venue_trade.id).execution_options(populate_existing=True)
            )).scalar_one()

        logger.info(
            f"✅ VENUE_ORDER_SETTLED: id={settled.id} order={venue_order_id} {venue_trade.side} "
            f"{executed_quantity}@{executed_price} received={received_amount} {received_token} revenue={revenue}"
        )
        return settled

    # ------------------------------------------------------------------
    # Operator and display reads
    # ------------------------------------------------------------------

    async def list_unsettled_venue_trades(self, older_than_seconds: int = 0) -> List[VenueTrade]:
        """Rows still ``submitted``: the venue outcome was never recorded"""
        stmt = select(VenueTrade).where(VenueTrade.status == VenueTradeStatus.SUBMITTED.value)
        if older_than_seconds > 0:
            stmt = stmt.where(VenueTrade.created_at <= utc_now() - timedelta(seconds=older_than_seconds))
        async with async_managed_session() as session:
            return list((await session.execute(stmt.order_by(VenueTrade.created_at, VenueTrade.id))).scalars().all())

    async def get_ticker(self, symbol: str) -> Dict[str, Any]:
        pair = await self._venue_pair(symbol)
        ticker = await self.venue.get_ticker(pair.venue_symbol)
        return {**self.markup.mark_up_ticker(ticker), "symbol": pair.symbol}

    async def get_order_book(self, symbol: str, depth: int = 20) -> Dict[str, Any]:
        pair = await self._venue_pair(symbol)
        book = self.markup.mark_up_depth(await self.venue.get_depth(pair.venue_symbol, depth))
        best_bid = book["bids"][0][0] if book["bids"] else None
        best_ask = book["asks"][0][0] if book["asks"] else None
        spread = (best_ask - best_bid) if best_bid is not None and best_ask is not None else None
        return {"symbol": pair.symbol, **book, "best_bid": best_bid, "best_ask": best_ask, "spread": spread}


async def seed_venue_pairs() -> List[TradingPair]:
    """Register every MEXC pair as a venue-backed trading pair (existing ones are kept)"""
    registered = []
    for venue_symbol, pair_config in MEXC_PAIR_CONFIG.items():
        symbol = f"{pair_config['base']}-{pair_config['quote']}"
        try:
            registered.append(await MatchingEngine.register_pair(
                symbol=symbol,
                base_token=pair_config["base"],
                quote_token=pair_config["quote"],
                min_order_size=pair_config["min_quantity"],
                price_precision=pair_config["price_precision"],
                quantity_precision=pair_config["quantity_precision"],
                venue_symbol=venue_symbol,
            ))
        except ConflictError:
            logger.debug(f"Venue pair {symbol} already registered")
    return registered


# Global instance
venue_relay = None


def get_venue_relay() -> VenueRelay:
    """Get or create the venue relay"""
    global venue_relay
    if venue_relay is None:
        venue_relay = VenueRelay()
    return venue_relay
