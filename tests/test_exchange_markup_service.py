"""
Venue markup economics
Spread, flat fee and the hybrid model on buy and sell fills
"""

from decimal import Decimal

import pytest

from services.exchange_markup_service import ExchangeMarkupService, MarkupModel


class TestQuotes:
    """Revenue = quantity * venue_price * markup + fee"""

    def test_hybrid_buy(self):
        service = ExchangeMarkupService(Decimal("0.5"), Decimal("0.1"))
        quote = service.quote("buy", "1", "2000")

        assert quote.user_price == Decimal("2010"), "Buyers pay above the venue price"
        assert quote.gross == Decimal("2010")
        assert quote.fee == Decimal("2.01")
        assert quote.settlement_amount == Decimal("2012.01")
        assert quote.markup_revenue == Decimal("10")
        assert quote.platform_revenue == Decimal("12.01")

    def test_hybrid_sell(self):
        service = ExchangeMarkupService(Decimal("0.5"), Decimal("0.1"))
        quote = service.quote("sell", "1", "2000")

        assert quote.user_price == Decimal("1990"), "Sellers receive below the venue price"
        assert quote.fee == Decimal("1.99")
        assert quote.settlement_amount == Decimal("1988.01")
        assert quote.platform_revenue == Decimal("11.99")

    def test_spread_only_takes_no_fee(self):
        service = ExchangeMarkupService(Decimal("0.5"), Decimal("0.1"), model=MarkupModel.SPREAD)
        quote = service.quote("buy", "2", "100")

        assert quote.fee == Decimal("0")
        assert quote.settlement_amount == Decimal("201")
        assert quote.platform_revenue == Decimal("1")

    def test_flat_fee_leaves_price_untouched(self):
        service = ExchangeMarkupService(Decimal("0.5"), Decimal("0.1"), model=MarkupModel.FLAT_FEE)
        quote = service.quote("sell", "2", "100")

        assert quote.user_price == Decimal("100")
        assert quote.markup_revenue == Decimal("0")
        assert quote.settlement_amount == Decimal("199.8")
        assert quote.platform_revenue == Decimal("0.2")

    def test_defaults_come_from_config(self, monkeypatch):
        from config import Config

        monkeypatch.setattr(Config, "VENUE_MARKUP_PERCENT", Decimal("1"))
        monkeypatch.setattr(Config, "VENUE_PLATFORM_FEE_PERCENT", Decimal("0.2"))
        summary = ExchangeMarkupService().get_markup_summary()

        assert summary == {
            "markup_model": "hybrid",
            "markup_percent": Decimal("1"),
            "platform_fee_percent": Decimal("0.2"),
        }


class TestBuyLock:

    def test_lock_covers_markup_fee_and_slippage(self):
        service = ExchangeMarkupService(Decimal("0.5"), Decimal("0"))
        assert service.estimate_buy_lock("1", "2000", slippage_percent=Decimal("12.5")) == Decimal("2261.25")

    def test_lock_uses_configured_slippage(self, monkeypatch):
        from config import Config

        monkeypatch.setattr(Config, "MARKET_ORDER_SLIPPAGE_PERCENT", Decimal("0"))
        service = ExchangeMarkupService(Decimal("0"), Decimal("0.1"))
        assert service.estimate_buy_lock("2", "100") == Decimal("200.2")


class TestDisplayData:

    def test_ticker_skew(self):
        service = ExchangeMarkupService(Decimal("1"), Decimal("0"))
        ticker = service.mark_up_ticker({
            "last_price": Decimal("100"),
            "ask_price": Decimal("101"),
            "bid_price": Decimal("99"),
            "high_price": Decimal("110"),
            "low_price": Decimal("90"),
            "volume": Decimal("5"),
        })

        assert ticker["last_price"] == Decimal("101")
        assert ticker["ask_price"] == Decimal("102.01")
        assert ticker["bid_price"] == Decimal("98.01")
        assert ticker["high_price"] == Decimal("111.1")
        assert ticker["low_price"] == Decimal("89.1")
        assert ticker["volume"] == Decimal("5"), "Volumes are not marked up"

    def test_depth_skew(self):
        service = ExchangeMarkupService(Decimal("1"), Decimal("0"))
        depth = service.mark_up_depth({"bids": [["100", "2"]], "asks": [["200", "0.5"]]})

        assert depth == {
            "bids": [[Decimal("99"), Decimal("2")]],
            "asks": [[Decimal("202"), Decimal("0.5")]],
        }

    def test_invalid_venue_price(self):
        from services.errors import ValidationError

        service = ExchangeMarkupService(Decimal("1"), Decimal("0"))
        with pytest.raises(ValidationError):
            service.quote("buy", "1", "not-a-price")
