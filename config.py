"""Configuration management for the TradePort deal and exchange core"""

import os
import logging
from decimal import Decimal
from typing import List

logger = logging.getLogger(__name__)


def _get_bool(env_var: str, default: str = "false") -> bool:
    return os.getenv(env_var, default).lower().strip() in ("1", "true", "yes", "on")


def _get_wallet_list(env_var: str) -> List[str]:
    """Parse a comma-separated wallet list into normalised addresses"""
    raw = os.getenv(env_var, "")
    return [w.strip().lower() for w in raw.split(",") if w.strip()]


def _validate_percentage(
    env_var: str, default: str, min_val: float = 0.0, max_val: float = 50.0
) -> Decimal:
    """Read a percentage setting and fall back to the default when out of range"""
    raw_value = os.getenv(env_var, default)
    try:
        value = Decimal(raw_value)
    except Exception:
        logger.error(f"❌ {env_var}={raw_value!r} is not a number, using default {default}%")
        return Decimal(default)

    if value < Decimal(str(min_val)) or value > Decimal(str(max_val)):
        logger.warning(
            f"⚠️ {env_var}={value}% outside allowed range [{min_val}, {max_val}], "
            f"using default {default}%"
        )
        return Decimal(default)
    return value


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./tradeport.db")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))
    DATABASE_ECHO = _get_bool("DATABASE_ECHO")

    if IS_PRODUCTION and DATABASE_URL.startswith("sqlite"):
        logger.error("❌ Production environment running on SQLite - set DATABASE_URL to PostgreSQL!")

    # Platform accounts
    PLATFORM_ADMIN_WALLETS = _get_wallet_list("PLATFORM_ADMIN_WALLETS")
    PLATFORM_FEE_WALLET = os.getenv("PLATFORM_FEE_WALLET", "platform-fees").lower()

    # Trade deals
    DEAL_REFERENCE_PREFIX = os.getenv("DEAL_REFERENCE_PREFIX", "DEAL")
    STAGE_CHANGE_MAX_RETRIES = int(os.getenv("STAGE_CHANGE_MAX_RETRIES", "3"))
    ESCROW_FEE_PERCENTAGE = _validate_percentage("ESCROW_FEE_PERCENTAGE", "0.5", 0.0, 10.0)

    # Disputes
    DISPUTE_RESPONSE_DAYS = int(os.getenv("DISPUTE_RESPONSE_DAYS", "7"))
    DISPUTE_RESOLUTION_FEE_USD = Decimal(os.getenv("DISPUTE_RESOLUTION_FEE_USD", "500"))

    # Internal exchange
    EXCHANGE_TRADING_FEE_PERCENT = _validate_percentage(
        "EXCHANGE_TRADING_FEE_PERCENT", "0.1", 0.0, 5.0
    )
    MARKET_ORDER_SLIPPAGE_PERCENT = _validate_percentage(
        "MARKET_ORDER_SLIPPAGE_PERCENT", "1.0", 0.0, 20.0
    )
    MATCHING_LOCK_TIMEOUT_SECONDS = int(os.getenv("MATCHING_LOCK_TIMEOUT_SECONDS", "30"))
    MATCHING_LOCK_WAIT_SECONDS = float(os.getenv("MATCHING_LOCK_WAIT_SECONDS", "10"))

    # MEXC venue
    MEXC_API_KEY = os.getenv("MEXC_API_KEY")
    MEXC_SECRET_KEY = os.getenv("MEXC_SECRET_KEY")
    MEXC_BASE_URL = os.getenv("MEXC_BASE_URL", "https://api.mexc.com")
    MEXC_RECV_WINDOW = int(os.getenv("MEXC_RECV_WINDOW", "5000"))
    MEXC_TIMEOUT_SECONDS = int(os.getenv("MEXC_TIMEOUT_SECONDS", "20"))
    MEXC_MAX_RETRIES = int(os.getenv("MEXC_MAX_RETRIES", "3"))

    VENUE_MARKUP_PERCENT = _validate_percentage("VENUE_MARKUP_PERCENT", "0.5", 0.0, 10.0)
    VENUE_PLATFORM_FEE_PERCENT = _validate_percentage(
        "VENUE_PLATFORM_FEE_PERCENT", "0.1", 0.0, 5.0
    )

    # Notifications
    NOTIFICATION_PERSIST_ENABLED = _get_bool("NOTIFICATION_PERSIST_ENABLED", "true")

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 TradePort Environment Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('@')[-1]}")
        logger.info(f"   Trading fee: {Config.EXCHANGE_TRADING_FEE_PERCENT}%")
        logger.info(
            f"   Venue markup/fee: {Config.VENUE_MARKUP_PERCENT}% / {Config.VENUE_PLATFORM_FEE_PERCENT}%"
        )
        logger.info(f"   MEXC credentials: {'configured' if Config.MEXC_API_KEY else 'missing'}")
        logger.info(f"   Admin wallets: {len(Config.PLATFORM_ADMIN_WALLETS)}")
