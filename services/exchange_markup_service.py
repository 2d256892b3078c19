"""
Exchange Markup Service
Venue revenue model: spread markup on the venue price plus a flat platform fee
"""

import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from config import Config
from models import OrderSide
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

ONE = Decimal("1")
HUNDRED = Decimal("100")


class MarkupModel(Enum):
    """How platform revenue is taken on relayed trades"""

    SPREAD = "spread"  # Users trade at venue price moved against them
    FLAT_FEE = "flat_fee"  # Percentage of the gross trade value
    HYBRID = "hybrid"  # Both, the production setting


class VenueQuote(NamedTuple):
    """Economics of one relayed fill"""

    side: str
    quantity: Decimal
    venue_price: Decimal
    user_price: Decimal
    gross: Decimal  # quantity * user_price, in quote
    fee: Decimal  # platform fee, in quote
    settlement_amount: Decimal  # buy: quote the user pays; sell: quote the user receives
    markup_revenue: Decimal
    platform_revenue: Decimal  # markup_revenue + fee


class ExchangeMarkupService:
    """Applies the venue markup and fee to prices, fills and display data"""

    def __init__(
        self,
        markup_percent: Optional[Decimal] = None,
        fee_percent: Optional[Decimal] = None,
        model: MarkupModel = MarkupModel.HYBRID,
    ):
        self.markup_model = model
        self.markup_percent = Decimal(str(markup_percent if markup_percent is not None else Config.VENUE_MARKUP_PERCENT))
        self.fee_percent = Decimal(str(fee_percent if fee_percent is not None else Config.VENUE_PLATFORM_FEE_PERCENT))

        logger.info(
            f"Exchange markup service initialized: model={self.markup_model.value}, "
            f"markup={self.markup_percent}%, fee={self.fee_percent}%"
        )

    @property
    def markup_multiplier(self) -> Decimal:
        if self.markup_model == MarkupModel.FLAT_FEE:
            return Decimal("0")
        return self.markup_percent / HUNDRED

    @property
    def fee_multiplier(self) -> Decimal:
        if self.markup_model == MarkupModel.SPREAD:
            return Decimal("0")
        return self.fee_percent / HUNDRED

    def apply_markup(self, venue_price, side: str) -> Decimal:
        """Price the user sees: buyers pay above the venue, sellers receive below it"""
        price = MonetaryDecimal.to_decimal(venue_price, "venue_price")
        if side == OrderSide.BUY.value:
            return price * (ONE + self.markup_multiplier)
        return price * (ONE - self.markup_multiplier)

    def quote(self, side: str, quantity, venue_price) -> VenueQuote:
        """
        Revenue breakdown for a fill of ``quantity`` at ``venue_price``.

        buy:  cost = gross + fee
        sell: proceeds = gross - fee
        revenue = quantity * venue_price * markup + fee
        """
        quantity = MonetaryDecimal.to_decimal(quantity, "quantity")
        venue_price = MonetaryDecimal.to_decimal(venue_price, "venue_price")
        user_price = self.apply_markup(venue_price, side)

        gross = MonetaryDecimal.quantize_ledger(quantity * user_price)
        fee = MonetaryDecimal.quantize_ledger(gross * self.fee_multiplier)
        markup_revenue = MonetaryDecimal.quantize_ledger(quantity * venue_price * self.markup_multiplier)

        if side == OrderSide.BUY.value:
            settlement = gross + fee
        else:
            settlement = gross - fee

        return VenueQuote(
            side=side,
            quantity=quantity,
            venue_price=venue_price,
            user_price=MonetaryDecimal.quantize_ledger(user_price),
            gross=gross,
            fee=fee,
            settlement_amount=settlement,
            markup_revenue=markup_revenue,
            platform_revenue=markup_revenue + fee,
        )

    def estimate_buy_lock(self, quantity, venue_ask, slippage_percent=None) -> Decimal:
        """Quote to reserve before a venue buy: marked-up cost plus fee and slippage buffer"""
        slippage = Decimal(str(
            slippage_percent if slippage_percent is not None else Config.MARKET_ORDER_SLIPPAGE_PERCENT
        ))
        quantity = MonetaryDecimal.to_decimal(quantity, "quantity")
        user_price = self.apply_markup(venue_ask, OrderSide.BUY.value)
        estimate = quantity * user_price * (ONE + self.fee_multiplier) * (ONE + slippage / HUNDRED)
        return MonetaryDecimal.quantize_ledger(estimate)

    def mark_up_ticker(self, ticker: Dict[str, Any]) -> Dict[str, Any]:
        """Display ticker: asks moved up, bids moved down, last at the buy price"""
        marked = dict(ticker)
        for key, side in (
            ("last_price", OrderSide.BUY.value),
            ("ask_price", OrderSide.BUY.value),
            ("high_price", OrderSide.BUY.value),
            ("bid_price", OrderSide.SELL.value),
            ("low_price", OrderSide.SELL.value),
        ):
            if ticker.get(key) is not None:
                marked[key] = self.apply_markup(ticker[key], side)
        marked["markup_percent"] = self.markup_percent if self.markup_model != MarkupModel.FLAT_FEE else Decimal("0")
        return marked

    def mark_up_depth(self, depth: Dict[str, List]) -> Dict[str, List]:
        """Display depth with the same skew applied per level"""
        return {
            "bids": [
                [self.apply_markup(price, OrderSide.SELL.value), Decimal(str(qty))]
                for price, qty in depth.get("bids", [])
            ],
            "asks": [
                [self.apply_markup(price, OrderSide.BUY.value), Decimal(str(qty))]
                for price, qty in depth.get("asks", [])
            ],
        }

    def get_markup_summary(self) -> Dict[str, Any]:
        return {
            "markup_model": self.markup_model.value,
            "markup_percent": self.markup_percent,
            "platform_fee_percent": self.fee_percent,
        }


# Global service instance
exchange_markup_service = ExchangeMarkupService()
