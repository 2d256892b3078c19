"""
Order Book & Matching Engine
Price-time priority matching for internal trading pairs

Placement and cancellation on one pair are serialized by a database lease keyed
on the pair symbol, so different pairs match in parallel across instances. Within
the lease every balance change is a conditional update on the ledger, joined to a
single transaction per placement: an order either lands with all its fills
settled or not at all.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from database import async_managed_session
from models import (
    ExchangeOrder, ExchangeTrade, OrderSide, OrderStatus, OrderType, PlatformRevenue, TradingPair, utc_now
)
from services.errors import (
    ConflictError, ForbiddenError, InvalidTransitionError, NotFoundError, UnauthorizedError, ValidationError
)
from services.exchange_balance_ledger import ExchangeBalanceLedger
from utils.atomic_transactions import update_if
from utils.decimal_precision import MonetaryDecimal
from utils.distributed_lock import distributed_lock_service

logger = logging.getLogger(__name__)

RESTING_STATUSES = (OrderStatus.OPEN.value, OrderStatus.PARTIAL.value)
ZERO = Decimal("0")


class PlacementResult(NamedTuple):
    order: ExchangeOrder
    trades: List[ExchangeTrade]

    @property
    def filled_quantity(self) -> Decimal:
        return sum((Decimal(t.quantity) for t in self.trades), ZERO)


def _require_wallet(wallet: Optional[str]) -> str:
    normalized = (wallet or "").strip().lower()
    if not normalized:
        raise UnauthorizedError()
    return normalized


def fee_rate() -> Decimal:
    return Decimal(str(Config.EXCHANGE_TRADING_FEE_PERCENT)) / Decimal("100")


def pair_lock_key(symbol: str) -> str:
    return distributed_lock_service.generate_lock_key("pair_matching", symbol)


class MatchingEngine:
    """Internal order book operations"""

    # ------------------------------------------------------------------
    # Trading pairs
    # ------------------------------------------------------------------

    @classmethod
    async def register_pair(
        cls,
        symbol: str,
        base_token: str,
        quote_token: str,
        min_order_size,
        price_precision: int = 8,
        quantity_precision: int = 8,
        venue_symbol: Optional[str] = None,
        is_active: bool = True,
    ) -> TradingPair:
        symbol = (symbol or "").strip().upper()
        base_token = (base_token or "").strip().upper()
        quote_token = (quote_token or "").strip().upper()
        if not symbol or not base_token or not quote_token:
            raise ValidationError("symbol, base_token and quote_token are required")
        if base_token == quote_token:
            raise ValidationError("Base and quote tokens must differ")
        min_size = MonetaryDecimal.to_positive(min_order_size, "min_order_size")
        for name, value in (("price_precision", price_precision), ("quantity_precision", quantity_precision)):
            if not isinstance(value, int) or isinstance(value, bool) or value < 0 or value > 18:
                raise ValidationError(f"{name} must be an integer between 0 and 18", details={"field": name})

        try:
            async with async_managed_session() as session:
                pair = TradingPair(
                    symbol=symbol,
                    base_token=base_token,
                    quote_token=quote_token,
                    min_order_size=min_size,
                    price_precision=price_precision,
                    quantity_precision=quantity_precision,
                    venue_symbol=venue_symbol.upper() if venue_symbol else None,
                    is_active=is_active,
                    created_at=utc_now(),
                )
                session.add(pair)
                await session.flush()
        except IntegrityError:
            raise ConflictError(f"Trading pair {symbol} already exists", details={"symbol": symbol})

        logger.info(
            f"✅ Registered trading pair {symbol} ({base_token}/{quote_token}) "
            f"min={min_size} venue={pair.venue_symbol or 'internal'}"
        )
        return pair

    @classmethod
    async def get_pair(cls, symbol: str, session: Optional[AsyncSession] = None) -> TradingPair:
        symbol = (symbol or "").strip().upper()
        stmt = select(TradingPair).where(TradingPair.symbol == symbol)
        if session is not None:
            pair = (await session.execute(stmt)).scalar_one_or_none()
        else:
            async with async_managed_session() as new_session:
                pair = (await new_session.execute(stmt)).scalar_one_or_none()
        if pair is None:
            raise NotFoundError(f"Trading pair {symbol} not found")
        return pair

    @classmethod
    async def list_pairs(cls, active_only: bool = True) -> List[TradingPair]:
        stmt = select(TradingPair).order_by(TradingPair.symbol)
        if active_only:
            stmt = stmt.where(TradingPair.is_active.is_(True))
        async with async_managed_session() as session:
            return list((await session.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    @classmethod
    def _validate_order(
        cls, pair: TradingPair, side: str, order_type: str, quantity, price
    ) -> tuple:
        if not pair.is_active:
            raise ValidationError(f"Trading pair {pair.symbol} is not active")
        if pair.venue_symbol:
            raise ValidationError(
                f"{pair.symbol} is venue-backed; orders are executed through the venue relay",
                details={"symbol": pair.symbol},
            )
        if side not in (OrderSide.BUY.value, OrderSide.SELL.value):
            raise ValidationError(f"Unknown order side '{side}'", details={"field": "side"})
        if order_type not in (OrderType.LIMIT.value, OrderType.MARKET.value):
            raise ValidationError(f"Unknown order type '{order_type}'", details={"field": "order_type"})

        quantity = MonetaryDecimal.to_positive(quantity, "quantity")
        MonetaryDecimal.check_precision(quantity, pair.quantity_precision, "quantity")
        if quantity < Decimal(pair.min_order_size):
            raise ValidationError(
                f"Quantity {quantity} is below the minimum order size {Decimal(pair.min_order_size).normalize()}",
                details={"field": "quantity", "min_order_size": str(pair.min_order_size)},
            )

        if order_type == OrderType.LIMIT.value:
            if price is None:
                raise ValidationError("Limit orders require a price", details={"field": "price"})
            price = MonetaryDecimal.to_positive(price, "price")
            MonetaryDecimal.check_precision(price, pair.price_precision, "price")
        elif price is not None:
            raise ValidationError("Market orders must not carry a price", details={"field": "price"})

        return quantity, price

    @classmethod
    async def _resting_orders(
        cls,
        session: AsyncSession,
        pair_id: int,
        side: str,
        exclude_wallet: Optional[str] = None,
        limit_price: Optional[Decimal] = None,
    ) -> List[ExchangeOrder]:
        """Resting orders on ``side`` in execution priority: best price, then oldest"""
        stmt = select(ExchangeOrder).where(
            ExchangeOrder.pair_id == pair_id,
            ExchangeOrder.side == side,
            ExchangeOrder.status.in_(RESTING_STATUSES),
        )
        if exclude_wallet:
            stmt = stmt.where(ExchangeOrder.wallet_address != exclude_wallet)

        if side == OrderSide.SELL.value:
            if limit_price is not None:
                stmt = stmt.where(ExchangeOrder.price <= limit_price)
            stmt = stmt.order_by(ExchangeOrder.price.asc(), ExchangeOrder.created_at.asc(), ExchangeOrder.id.asc())
        else:
            if limit_price is not None:
                stmt = stmt.where(ExchangeOrder.price >= limit_price)
            stmt = stmt.order_by(ExchangeOrder.price.desc(), ExchangeOrder.created_at.asc(), ExchangeOrder.id.asc())

        stmt = stmt.execution_options(populate_existing=True)
        return list((await session.execute(stmt)).scalars().all())

    @classmethod
    async def estimate_market_buy(
        cls, session: AsyncSession, pair: TradingPair, wallet: str, quantity: Decimal
    ) -> Decimal:
        """Quote needed to sweep ``quantity`` from resting asks, plus the slippage buffer"""
        asks = await cls._resting_orders(session, pair.id, OrderSide.SELL.value, exclude_wallet=wallet)
        if not asks:
            raise ValidationError(f"No sell-side liquidity for {pair.symbol}", details={"symbol": pair.symbol})

        remaining = quantity
        cost = ZERO
        for ask in asks:
            if remaining <= 0:
                break
            take = min(remaining, ask.remaining_quantity)
            cost += take * Decimal(ask.price)
            remaining -= take

        buffer = Decimal("1") + Decimal(str(Config.MARKET_ORDER_SLIPPAGE_PERCENT)) / Decimal("100")
        return MonetaryDecimal.quantize_ledger(cost * buffer)

    @classmethod
    async def place_order(
        cls,
        wallet_address: str,
        symbol: str,
        side: str,
        order_type: str,
        quantity,
        price=None,
    ) -> PlacementResult:
        """
        Place an order and match it immediately.

        Buys lock quote (``quantity * price`` for limits, a slippage-buffered sweep
        estimate for markets); sells lock ``quantity`` of base. A failed lock raises
        InsufficientBalanceError and leaves no trace. Market orders never rest: any
        unfilled remainder is cancelled and its reservation returned.
        """
        wallet = _require_wallet(wallet_address)
        side = (side or "").strip().lower()
        order_type = (order_type or "").strip().lower()
        pair = await cls.get_pair(symbol)
        quantity, price = cls._validate_order(pair, side, order_type, quantity, price)

        async with distributed_lock_service.acquire(
            pair_lock_key(pair.symbol),
            timeout=Config.MATCHING_LOCK_TIMEOUT_SECONDS,
            wait_seconds=Config.MATCHING_LOCK_WAIT_SECONDS,
            metadata={"symbol": pair.symbol, "operation": "place_order"},
        ):
            async with async_managed_session() as session:
                if side == OrderSide.SELL.value:
                    if order_type == OrderType.MARKET.value:
                        bids = await cls._resting_orders(session, pair.id, OrderSide.BUY.value, exclude_wallet=wallet)
                        if not bids:
                            raise ValidationError(
                                f"No buy-side liquidity for {pair.symbol}", details={"symbol": pair.symbol}
                            )
                    locked_token = pair.base_token
                    lock_amount = MonetaryDecimal.quantize_ledger(quantity)
                elif order_type == OrderType.LIMIT.value:
                    locked_token = pair.quote_token
                    lock_amount = MonetaryDecimal.quantize_ledger(quantity * price)
                else:
                    locked_token = pair.quote_token
                    lock_amount = await cls.estimate_market_buy(session, pair, wallet, quantity)

                await ExchangeBalanceLedger.lock(session, wallet, locked_token, lock_amount)

                now = utc_now()
                order = ExchangeOrder(
                    wallet_address=wallet,
                    pair_id=pair.id,
                    side=side,
                    order_type=order_type,
                    price=price,
                    quantity=quantity,
                    filled_quantity=ZERO,
                    locked_amount=lock_amount,
                    locked_token=locked_token,
                    status=OrderStatus.OPEN.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(order)
                await session.flush()

                trades = await cls._match(session, pair, order, lock_amount)
                order = await cls._load_order(session, order.id)

        logger.info(
            f"ORDER_PLACED: id={order.id} {pair.symbol} {side} {order_type} qty={quantity} "
            f"price={price if price is not None else 'market'} wallet={wallet} "
            f"fills={len(trades)} status={order.status}"
        )
        return PlacementResult(order, trades)

    @classmethod
    async def _load_order(cls, session: AsyncSession, order_id: int) -> ExchangeOrder:
        order = (await session.execute(
            select(ExchangeOrder).where(ExchangeOrder.id == order_id).execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    @classmethod
    async def _apply_fill(
        cls, session: AsyncSession, order: ExchangeOrder, fill_quantity: Decimal, filled_before: Decimal,
        released: Decimal, new_status: str
    ):
        updated = await update_if(
            session,
            ExchangeOrder,
            where=[
                ExchangeOrder.id == order.id,
                ExchangeOrder.status.in_(RESTING_STATUSES),
                ExchangeOrder.filled_quantity + fill_quantity <= ExchangeOrder.quantity,
            ],
            values={
                "filled_quantity": filled_before + fill_quantity,
                "locked_amount": ExchangeOrder.locked_amount - released,
                "status": new_status,
                "updated_at": utc_now(),
            },
        )
        if updated != 1:
            raise ConflictError(f"Order {order.id} changed during matching", details={"order_id": order.id})

    @classmethod
    async def _release_residual_lock(cls, session: AsyncSession, order: ExchangeOrder):
        """Per-fill truncation can leave dust reserved on a filled order; return it"""
        residual = (await session.execute(
            select(ExchangeOrder.locked_amount).where(ExchangeOrder.id == order.id)
        )).scalar_one()
        residual = MonetaryDecimal.quantize_ledger(residual or ZERO)
        if residual <= 0:
            return
        await update_if(
            session,
            ExchangeOrder,
            where=[ExchangeOrder.id == order.id],
            values={"locked_amount": ZERO, "updated_at": utc_now()},
        )
        await ExchangeBalanceLedger.unlock(session, order.wallet_address, order.locked_token, residual)
        logger.info(f"ORDER_RESIDUAL_UNLOCKED: id={order.id} {residual} {order.locked_token} to {order.wallet_address}")

    @classmethod
    async def _match(
        cls, session: AsyncSession, pair: TradingPair, taker: ExchangeOrder, taker_locked: Decimal
    ) -> List[ExchangeTrade]:
        """Cross ``taker`` against the book, settling each fill at the maker's price"""
        rate = fee_rate()
        taker_price = Decimal(taker.price) if taker.price is not None else None
        taker_quantity = Decimal(taker.quantity)
        taker_filled = ZERO
        opposite = OrderSide.SELL.value if taker.side == OrderSide.BUY.value else OrderSide.BUY.value

        makers = await cls._resting_orders(
            session, pair.id, opposite, exclude_wallet=taker.wallet_address, limit_price=taker_price
        )
        trades: List[ExchangeTrade] = []

        for maker in makers:
            remaining = taker_quantity - taker_filled
            if remaining <= 0:
                break

            maker_filled = Decimal(maker.filled_quantity or 0)
            maker_remaining = Decimal(maker.quantity) - maker_filled
            fill_qty = min(remaining, maker_remaining)
            if fill_qty <= 0:
                continue

            fill_price = Decimal(maker.price)
            total = MonetaryDecimal.quantize_ledger(fill_qty * fill_price)
            buy_order, sell_order = (taker, maker) if taker.side == OrderSide.BUY.value else (maker, taker)

            # Buyer reservation consumed by this fill: the trade total plus any
            # limit price improvement, which goes back to available
            improvement = ZERO
            if buy_order.order_type == OrderType.LIMIT.value:
                reserved = MonetaryDecimal.quantize_ledger(fill_qty * Decimal(buy_order.price))
                improvement = max(reserved - total, ZERO)

            buyer_fee = MonetaryDecimal.quantize_ledger(fill_qty * rate)
            seller_fee = MonetaryDecimal.quantize_ledger(total * rate)

            await ExchangeBalanceLedger.settle(
                session, buy_order.wallet_address, pair.quote_token, total, pair.base_token, fill_qty - buyer_fee
            )
            if improvement > 0:
                await ExchangeBalanceLedger.unlock(session, buy_order.wallet_address, pair.quote_token, improvement)
            await ExchangeBalanceLedger.settle(
                session, sell_order.wallet_address, pair.base_token, fill_qty, pair.quote_token, total - seller_fee
            )

            # Order bookkeeping
            buyer_released = total + improvement
            maker_released = buyer_released if maker.side == OrderSide.BUY.value else fill_qty
            taker_released = buyer_released if taker.side == OrderSide.BUY.value else fill_qty

            maker_status = (
                OrderStatus.FILLED.value if maker_filled + fill_qty >= Decimal(maker.quantity)
                else OrderStatus.PARTIAL.value
            )
            await cls._apply_fill(session, maker, fill_qty, maker_filled, maker_released, maker_status)
            if maker_status == OrderStatus.FILLED.value:
                await cls._release_residual_lock(session, maker)

            taker_status = (
                OrderStatus.FILLED.value if taker_filled + fill_qty >= taker_quantity
                else OrderStatus.PARTIAL.value
            )
            await cls._apply_fill(session, taker, fill_qty, taker_filled, taker_released, taker_status)
            taker_filled += fill_qty
            taker_locked -= taker_released

            trade = ExchangeTrade(
                pair_id=pair.id,
                buy_order_id=buy_order.id,
                sell_order_id=sell_order.id,
                buyer_wallet=buy_order.wallet_address,
                seller_wallet=sell_order.wallet_address,
                taker_side=taker.side,
                price=fill_price,
                quantity=fill_qty,
                total=total,
                buyer_fee=buyer_fee,
                seller_fee=seller_fee,
                created_at=utc_now(),
            )
            session.add(trade)
            await session.flush()
            await cls._collect_fees(session, pair, trade, buyer_fee, seller_fee)
            trades.append(trade)

            logger.info(
                f"TRADE_EXECUTED: {pair.symbol} id={trade.id} {fill_qty}@{fill_price} "
                f"buy={buy_order.id} sell={sell_order.id} taker={taker.side}"
            )

        await cls._finalize_taker(session, taker, taker_quantity, taker_filled, taker_locked)
        return trades

    @classmethod
    async def _collect_fees(
        cls, session: AsyncSession, pair: TradingPair, trade: ExchangeTrade, buyer_fee: Decimal, seller_fee: Decimal
    ):
        for token, amount in ((pair.base_token, buyer_fee), (pair.quote_token, seller_fee)):
            if amount <= 0:
                continue
            await ExchangeBalanceLedger.credit(session, Config.PLATFORM_FEE_WALLET, token, amount)
            session.add(PlatformRevenue(
                revenue_type="trade_fee",
                source_type="exchange_trade",
                source_id=trade.id,
                token=token,
                amount=amount,
                created_at=utc_now(),
            ))

    @classmethod
    async def _finalize_taker(
        cls, session: AsyncSession, taker: ExchangeOrder, quantity: Decimal, filled: Decimal, locked_left: Decimal
    ):
        """Return leftover reservations; market orders never rest on the book"""
        fully_filled = filled >= quantity
        if not fully_filled and taker.order_type == OrderType.LIMIT.value:
            return

        if locked_left > 0:
            await ExchangeBalanceLedger.unlock(session, taker.wallet_address, taker.locked_token, locked_left)

        final_status = OrderStatus.FILLED.value if fully_filled else OrderStatus.CANCELLED.value
        await update_if(
            session,
            ExchangeOrder,
            where=[ExchangeOrder.id == taker.id],
            values={"status": final_status, "locked_amount": ZERO, "updated_at": utc_now()},
        )
        if not fully_filled:
            logger.info(
                f"MARKET_REMAINDER_CANCELLED: order={taker.id} filled={filled}/{quantity} "
                f"returned={locked_left} {taker.locked_token}"
            )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @classmethod
    async def cancel_order(cls, wallet_address: str, order_id: int) -> ExchangeOrder:
        """Owner cancels a resting order; the outstanding reservation is unlocked"""
        wallet = _require_wallet(wallet_address)

        async with async_managed_session() as session:
            order = await cls._load_order(session, order_id)
            pair = (await session.execute(
                select(TradingPair).where(TradingPair.id == order.pair_id)
            )).scalar_one()
        if order.wallet_address != wallet:
            raise ForbiddenError(f"Order {order_id} belongs to another wallet")

        async with distributed_lock_service.acquire(
            pair_lock_key(pair.symbol),
            timeout=Config.MATCHING_LOCK_TIMEOUT_SECONDS,
            wait_seconds=Config.MATCHING_LOCK_WAIT_SECONDS,
            metadata={"symbol": pair.symbol, "operation": "cancel_order"},
        ):
            async with async_managed_session() as session:
                order = await cls._load_order(session, order_id)
                if order.status not in RESTING_STATUSES:
                    raise InvalidTransitionError(
                        order.status, OrderStatus.CANCELLED.value, RESTING_STATUSES, entity="order"
                    )

                locked = Decimal(order.locked_amount or 0)
                updated = await update_if(
                    session,
                    ExchangeOrder,
                    where=[ExchangeOrder.id == order.id, ExchangeOrder.status == order.status],
                    values={"status": OrderStatus.CANCELLED.value, "locked_amount": ZERO, "updated_at": utc_now()},
                )
                if updated != 1:
                    raise ConflictError(f"Order {order_id} changed during cancellation")
                if locked > 0:
                    await ExchangeBalanceLedger.unlock(session, wallet, order.locked_token, locked)
                order = await cls._load_order(session, order_id)

        logger.info(f"ORDER_CANCELLED: id={order_id} {pair.symbol} wallet={wallet} returned={locked} {order.locked_token}")
        return order

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @classmethod
    def _aggregate_levels(cls, orders: List[ExchangeOrder], depth: int) -> List[Dict[str, Any]]:
        levels: List[Dict[str, Any]] = []
        cumulative = ZERO
        for order in orders:
            price = Decimal(order.price)
            remaining = order.remaining_quantity
            if levels and levels[-1]["price"] == price:
                levels[-1]["quantity"] += remaining
                levels[-1]["orders"] += 1
            else:
                if len(levels) >= depth:
                    break
                levels.append({"price": price, "quantity": remaining, "orders": 1})
        for level in levels:
            cumulative += level["quantity"]
            level["total"] = cumulative
        return levels

    @classmethod
    async def get_order_book(cls, symbol: str, depth: int = 20) -> Dict[str, Any]:
        """Aggregated price levels with spread and mid price"""
        depth = min(max(1, int(depth)), 500)
        async with async_managed_session() as session:
            pair = await cls.get_pair(symbol, session)
            bids = await cls._resting_orders(session, pair.id, OrderSide.BUY.value)
            asks = await cls._resting_orders(session, pair.id, OrderSide.SELL.value)

        bid_levels = cls._aggregate_levels([o for o in bids if o.price is not None], depth)
        ask_levels = cls._aggregate_levels([o for o in asks if o.price is not None], depth)

        best_bid = bid_levels[0]["price"] if bid_levels else None
        best_ask = ask_levels[0]["price"] if ask_levels else None
        spread = spread_percent = mid_price = None
        if best_bid is not None and best_ask is not None:
            spread = best_ask - best_bid
            mid_price = (best_ask + best_bid) / Decimal("2")
            spread_percent = (spread / best_ask * Decimal("100")) if best_ask > 0 else None

        return {
            "symbol": pair.symbol,
            "bids": bid_levels,
            "asks": ask_levels,
            "best_bid": best_bid,
            "best_ask": best_ask,
            "spread": spread,
            "spread_percent": spread_percent,
            "mid_price": mid_price,
        }

    @classmethod
    async def get_user_orders(
        cls, wallet_address: str, symbol: Optional[str] = None, status: Optional[str] = None, limit: int = 50
    ) -> List[ExchangeOrder]:
        wallet = _require_wallet(wallet_address)
        async with async_managed_session() as session:
            stmt = select(ExchangeOrder).where(ExchangeOrder.wallet_address == wallet)
            if symbol:
                pair = await cls.get_pair(symbol, session)
                stmt = stmt.where(ExchangeOrder.pair_id == pair.id)
            if status == "active":
                stmt = stmt.where(ExchangeOrder.status.in_(RESTING_STATUSES))
            elif status:
                stmt = stmt.where(ExchangeOrder.status == status)
            stmt = stmt.order_by(ExchangeOrder.created_at.desc(), ExchangeOrder.id.desc()).limit(min(limit, 500))
            return list((await session.execute(stmt)).scalars().all())

    @classmethod
    async def get_recent_trades(cls, symbol: str, limit: int = 50) -> List[ExchangeTrade]:
        async with async_managed_session() as session:
            pair = await cls.get_pair(symbol, session)
            return list((await session.execute(
                select(ExchangeTrade)
                .where(ExchangeTrade.pair_id == pair.id)
                .order_by(ExchangeTrade.created_at.desc(), ExchangeTrade.id.desc())
                .limit(min(limit, 500))
            )).scalars().all())

    @classmethod
    async def get_user_trades(cls, wallet_address: str, symbol: Optional[str] = None, limit: int = 50) -> List[ExchangeTrade]:
        wallet = _require_wallet(wallet_address)
        async with async_managed_session() as session:
            stmt = select(ExchangeTrade).where(
                or_(ExchangeTrade.buyer_wallet == wallet, ExchangeTrade.seller_wallet == wallet)
            )
            if symbol:
                pair = await cls.get_pair(symbol, session)
                stmt = stmt.where(ExchangeTrade.pair_id == pair.id)
            return list((await session.execute(
                stmt.order_by(ExchangeTrade.created_at.desc(), ExchangeTrade.id.desc()).limit(min(limit, 500))
            )).scalars().all())

    @classmethod
    async def get_ticker(cls, symbol: str) -> Dict[str, Any]:
        """24h statistics from the trade tape"""
        since = utc_now() - timedelta(hours=24)
        async with async_managed_session() as session:
            pair = await cls.get_pair(symbol, session)
            last = (await session.execute(
                select(ExchangeTrade.price)
                .where(ExchangeTrade.pair_id == pair.id)
                .order_by(ExchangeTrade.created_at.desc(), ExchangeTrade.id.desc())
                .limit(1)
            )).scalar_one_or_none()
            window = (await session.execute(
                select(ExchangeTrade.price, ExchangeTrade.quantity, ExchangeTrade.total)
                .where(ExchangeTrade.pair_id == pair.id, ExchangeTrade.created_at >= since)
                .order_by(ExchangeTrade.created_at.asc(), ExchangeTrade.id.asc())
            )).all()
            trade_count = (await session.execute(
                select(func.count(ExchangeTrade.id))
                .where(ExchangeTrade.pair_id == pair.id, ExchangeTrade.created_at >= since)
            )).scalar_one()

        prices = [Decimal(row[0]) for row in window]
        last_price = Decimal(last) if last is not None else None
        open_price = prices[0] if prices else None
        change = (last_price - open_price) if (last_price is not None and open_price is not None) else ZERO
        change_percent = (change / open_price * Decimal("100")) if open_price else ZERO

        return {
            "symbol": pair.symbol,
            "last_price": last_price,
            "high_24h": max(prices) if prices else None,
            "low_24h": min(prices) if prices else None,
            "volume_24h": sum((Decimal(row[1]) for row in window), ZERO),
            "quote_volume_24h": sum((Decimal(row[2]) for row in window), ZERO),
            "change_24h": change,
            "change_percent_24h": change_percent,
            "trade_count_24h": int(trade_count),
        }
