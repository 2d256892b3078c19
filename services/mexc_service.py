"""MEXC spot API integration for venue-backed trading pairs"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
import urllib.parse
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Dict, List, NamedTuple, Optional

import aiohttp

from config import Config
from services.errors import UpstreamFailureError, ValidationError, VenueOutcomeUnknownError

logger = logging.getLogger(__name__)


# Venue pair table: base/quote tokens, precisions and minimum order quantity
MEXC_PAIR_CONFIG: Dict[str, Dict[str, Any]] = {
    "USDTUSDC": {"base": "USDT", "quote": "USDC", "price_precision": 4, "quantity_precision": 2, "min_quantity": Decimal("1")},
    "POLUSDT": {"base": "POL", "quote": "USDT", "price_precision": 4, "quantity_precision": 2, "min_quantity": Decimal("1")},
    "POLUSDC": {"base": "POL", "quote": "USDC", "price_precision": 4, "quantity_precision": 2, "min_quantity": Decimal("1")},
    "ETHUSDT": {"base": "ETH", "quote": "USDT", "price_precision": 2, "quantity_precision": 5, "min_quantity": Decimal("0.001")},
    "ETHUSDC": {"base": "ETH", "quote": "USDC", "price_precision": 2, "quantity_precision": 5, "min_quantity": Decimal("0.001")},
    "BTCUSDT": {"base": "BTC", "quote": "USDT", "price_precision": 2, "quantity_precision": 6, "min_quantity": Decimal("0.0001")},
    "BTCUSDC": {"base": "BTC", "quote": "USDC", "price_precision": 2, "quantity_precision": 6, "min_quantity": Decimal("0.0001")},
    "MATICUSDT": {"base": "MATIC", "quote": "USDT", "price_precision": 4, "quantity_precision": 2, "min_quantity": Decimal("1")},
}

# Order states in which an order with no executed quantity will never fill
MEXC_TERMINAL_UNFILLED = ("CANCELED", "REJECTED", "EXPIRED")


class VenueOrderResult(NamedTuple):
    success: bool
    executed_quantity: Optional[Decimal] = None
    executed_price: Optional[Decimal] = None
    order_id: Optional[str] = None
    error: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


def _to_decimal(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


class MexcService:
    """MEXC v3 REST client: signed market orders plus public ticker and depth"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        max_retries: Optional[int] = None,
    ):
        self.api_key = api_key or Config.MEXC_API_KEY
        self.secret_key = secret_key or Config.MEXC_SECRET_KEY
        self.base_url = (base_url or Config.MEXC_BASE_URL).rstrip("/")
        self.timeout = timeout or Config.MEXC_TIMEOUT_SECONDS
        self.max_retries = max_retries or Config.MEXC_MAX_RETRIES
        self.recv_window = Config.MEXC_RECV_WINDOW

        if not self.is_available():
            logger.warning("⚠️ MEXC credentials missing - venue orders disabled, public data only")
        logger.info("📈 MEXC service initialized")

    def is_available(self) -> bool:
        return bool(self.api_key and self.secret_key)

    def _generate_signature(self, query_string: str) -> str:
        """HMAC-SHA256 of the exact query string, hex encoded"""
        return hmac.new(
            self.secret_key.encode("utf-8"),
            query_string.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _signed_query(self, params: Dict[str, Any]) -> str:
        signed_params = dict(params)
        signed_params["timestamp"] = int(time.time() * 1000)
        signed_params["recvWindow"] = self.recv_window
        query_string = urllib.parse.urlencode(signed_params)
        return f"{query_string}&signature={self._generate_signature(query_string)}"

    def _get_headers(self, signed: bool) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": "TradePort-MEXC/1.0.0"}
        if signed:
            headers["X-MEXC-APIKEY"] = self.api_key
        return headers

    async def _request(
        self, method: str, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False
    ) -> Any:
        """
        Single HTTP exchange with MEXC.

        Non-2xx responses and MEXC error payloads raise UpstreamFailureError carrying
        the venue's error code.
        """
        params = params or {}
        query_string = self._signed_query(params) if signed else urllib.parse.urlencode(params)
        url = f"{self.base_url}{path}"
        if query_string:
            url = f"{url}?{query_string}"

        async with aiohttp.ClientSession() as session:
            async with session.request(
                method,
                url,
                headers=self._get_headers(signed),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                response_text = await response.text()
                try:
                    payload = json.loads(response_text) if response_text else {}
                except json.JSONDecodeError:
                    logger.error(f"❌ MEXC invalid JSON from {path}: {response_text[:200]}")
                    raise UpstreamFailureError(f"Invalid JSON response from MEXC {path}")

                if response.status >= 400:
                    code = payload.get("code") if isinstance(payload, dict) else None
                    message = payload.get("msg") if isinstance(payload, dict) else response_text[:200]
                    logger.error(f"❌ MEXC API HTTP error: {response.status} {path} code={code} msg={message}")
                    raise UpstreamFailureError(
                        f"MEXC {path} failed with HTTP {response.status}: {message}",
                        error_code=str(code) if code is not None else f"http_{response.status}",
                        details={"status": response.status, "path": path},
                    )
                return payload

    async def _get_with_retry(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        """Read endpoints retry transport errors with exponential backoff"""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._request("GET", path, params, signed=signed)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                logger.warning(f"MEXC GET {path} attempt {attempt}/{self.max_retries} failed: {e}")
                if attempt < self.max_retries:
                    await asyncio.sleep(0.5 * (2 ** (attempt - 1)))
        raise UpstreamFailureError(
            f"MEXC {path} unavailable after {self.max_retries} attempts: {last_error}",
            details={"path": path},
        )

    # ------------------------------------------------------------------
    # Public market data
    # ------------------------------------------------------------------

    async def get_ticker(self, symbol: str) -> Dict[str, Any]:
        data = await self._get_with_retry("/api/v3/ticker/24hr", {"symbol": symbol})
        return {
            "symbol": data.get("symbol", symbol),
            "last_price": _to_decimal(data.get("lastPrice")),
            "bid_price": _to_decimal(data.get("bidPrice")),
            "ask_price": _to_decimal(data.get("askPrice")),
            "high_price": _to_decimal(data.get("highPrice")),
            "low_price": _to_decimal(data.get("lowPrice")),
            "volume": _to_decimal(data.get("volume")) or Decimal("0"),
            "quote_volume": _to_decimal(data.get("quoteVolume")) or Decimal("0"),
            "price_change": _to_decimal(data.get("priceChange")) or Decimal("0"),
            # MEXC reports the 24h change as a fraction
            "price_change_percent": (_to_decimal(data.get("priceChangePercent")) or Decimal("0")) * Decimal("100"),
        }

    async def get_depth(self, symbol: str, limit: int = 20) -> Dict[str, List[List[Decimal]]]:
        data = await self._get_with_retry("/api/v3/depth", {"symbol": symbol, "limit": limit})
        return {
            "bids": [[Decimal(str(price)), Decimal(str(qty))] for price, qty in data.get("bids", [])],
            "asks": [[Decimal(str(price)), Decimal(str(qty))] for price, qty in data.get("asks", [])],
        }

    async def get_ask_price(self, symbol: str) -> Decimal:
        ticker = await self.get_ticker(symbol)
        price = ticker.get("ask_price") or ticker.get("last_price")
        if not price or price <= 0:
            raise UpstreamFailureError(f"Could not get current price for {symbol}")
        return price

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def format_quantity(self, symbol: str, quantity: Decimal) -> str:
        pair_config = MEXC_PAIR_CONFIG.get(symbol)
        if pair_config is None:
            raise ValidationError(f"Unsupported MEXC pair {symbol}", details={"symbol": symbol})
        step = Decimal(1).scaleb(-pair_config["quantity_precision"])
        return str(Decimal(quantity).quantize(step, rounding=ROUND_DOWN))

    async def get_order(self, symbol: str, order_id: str) -> Dict[str, Any]:
        return await self._get_with_retry("/api/v3/order", {"symbol": symbol, "orderId": order_id}, signed=True)

    def _parse_fill(self, payload: Dict[str, Any]) -> tuple:
        executed_qty = _to_decimal(payload.get("executedQty"))
        quote_qty = _to_decimal(payload.get("cummulativeQuoteQty"))
        price = _to_decimal(payload.get("price"))
        if (price is None or price <= 0) and executed_qty and quote_qty:
            price = quote_qty / executed_qty
        return executed_qty, price

    async def execute_market_order(self, symbol: str, side: str, quantity: Decimal) -> VenueOrderResult:
        """
        Submit a MARKET order.

        Definite rejections (HTTP 4xx before any ack, connection refused, or a
        read-back showing the order died unfilled) come back as
        ``VenueOrderResult(success=False, error=...)``. When the venue may hold the
        order but its fill cannot be confirmed, VenueOutcomeUnknownError is raised
        carrying whatever order id was acknowledged.
        """
        if not self.is_available():
            return VenueOrderResult(success=False, error="MEXC API credentials not configured")

        params = {
            "symbol": symbol,
            "side": side.upper(),
            "type": "MARKET",
            "quantity": self.format_quantity(symbol, quantity),
        }
        try:
            payload = await self._request("POST", "/api/v3/order", params, signed=True)
        except UpstreamFailureError as e:
            status = e.details.get("status")
            if status is not None and 400 <= status < 500:
                logger.error(f"❌ VENUE_ORDER_REJECTED: {symbol} {side} {quantity}: {e.message}")
                return VenueOrderResult(success=False, error=e.message)
            logger.critical(f"🚨 VENUE_OUTCOME_UNKNOWN: {symbol} {side} {quantity} submit failed: {e.message}")
            raise VenueOutcomeUnknownError(
                f"MEXC order submission outcome unknown: {e.message}", details={"symbol": symbol}
            ) from e
        except aiohttp.ClientConnectorError as e:
            logger.error(f"❌ VENUE_ORDER_REJECTED: {symbol} {side} {quantity}: could not connect {e}")
            return VenueOrderResult(success=False, error=f"MEXC unreachable: {e}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.critical(f"🚨 VENUE_OUTCOME_UNKNOWN: {symbol} {side} {quantity} transport error {e}")
            raise VenueOutcomeUnknownError(
                f"MEXC order submission outcome unknown: {e}", details={"symbol": symbol}
            ) from e

        order_id = str(payload.get("orderId")) if payload.get("orderId") is not None else None
        if order_id is None:
            logger.critical(f"🚨 VENUE_OUTCOME_UNKNOWN: {symbol} {side} ack without order id: {payload}")
            raise VenueOutcomeUnknownError("MEXC acknowledged the order without an order id",
                                           details={"symbol": symbol})

        executed_qty, executed_price = self._parse_fill(payload)
        if executed_price is None or executed_price <= 0 or not executed_qty:
            # Market order acks often omit fill details; read them back
            try:
                order = await self.get_order(symbol, order_id)
            except UpstreamFailureError as e:
                logger.critical(f"🚨 VENUE_OUTCOME_UNKNOWN: {symbol} {side} order={order_id} read-back failed: {e}")
                raise VenueOutcomeUnknownError(
                    f"MEXC order {order_id} fill could not be read back: {e.message}",
                    venue_order_id=order_id,
                    details={"symbol": symbol},
                ) from e
            executed_qty, executed_price = self._parse_fill(order)
            if not executed_qty and order.get("status") in MEXC_TERMINAL_UNFILLED:
                logger.error(f"❌ VENUE_ORDER_FAILED: {symbol} {side} order={order_id} {order.get('status')}")
                return VenueOrderResult(
                    success=False, order_id=order_id, error=f"MEXC order {order.get('status')}", raw=order
                )

        if not executed_qty or executed_qty <= 0 or executed_price is None or executed_price <= 0:
            logger.critical(f"🚨 VENUE_OUTCOME_UNKNOWN: {symbol} {side} order={order_id} no fill reported yet")
            raise VenueOutcomeUnknownError(
                f"MEXC order {order_id} reported no fill", venue_order_id=order_id, details={"symbol": symbol}
            )

        logger.info(
            f"✅ VENUE_ORDER_FILLED: {symbol} {side} qty={executed_qty} price={executed_price} order={order_id}"
        )
        return VenueOrderResult(
            success=True,
            executed_quantity=executed_qty,
            executed_price=executed_price,
            order_id=order_id,
            raw=payload,
        )


# Global instance
mexc_service = None


def get_mexc_service() -> MexcService:
    """Get or create MEXC service instance"""
    global mexc_service
    if mexc_service is None:
        mexc_service = MexcService()
    return mexc_service
