"""
TradePort core service entry point.

Deterministic startup: logging, configuration dump, database schema, venue pair
seeding, then a maintenance loop (expired lock cleanup, unsettled venue trade
reporting) until SIGINT/SIGTERM.
"""

import asyncio
import logging
import sys

from config import Config
from database import create_tables, test_connection
from utils.graceful_shutdown import create_managed_task, shutdown_manager
from utils.logging_setup import configure_logging

logger = logging.getLogger(__name__)

MAINTENANCE_INTERVAL_SECONDS = 60
UNSETTLED_VENUE_TRADE_AGE_SECONDS = 300


class StartupManager:
    """Clean startup manager with an explicit, ordered sequence"""

    def __init__(self):
        self.startup_errors = []

    async def initialize_database(self) -> bool:
        logger.info("🗄️ Initializing database...")
        if not await test_connection():
            self.startup_errors.append("Database: connection test failed")
            return False
        try:
            await create_tables()
        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}")
            self.startup_errors.append(f"Database: {e}")
            return False
        logger.info("✅ Database initialization complete")
        return True

    async def seed_trading_pairs(self) -> bool:
        from services.venue_relay import seed_venue_pairs

        try:
            created = await seed_venue_pairs()
            logger.info(f"✅ Venue pairs ready ({len(created)} newly registered)")
            return True
        except Exception as e:
            logger.error(f"❌ Venue pair seeding failed: {e}")
            self.startup_errors.append(f"Venue pairs: {e}")
            return False

    async def run_maintenance(self):
        """Periodic housekeeping until shutdown is requested"""
        from services.venue_relay import get_venue_relay
        from utils.distributed_lock import distributed_lock_service

        while not shutdown_manager.shutdown_event.is_set():
            try:
                await distributed_lock_service.cleanup_expired_locks()
                stuck = await get_venue_relay().list_unsettled_venue_trades(
                    older_than_seconds=UNSETTLED_VENUE_TRADE_AGE_SECONDS
                )
                if stuck:
                    logger.critical(
                        f"🚨 UNSETTLED_VENUE_TRADES: {len(stuck)} relayed orders need reconciliation: "
                        f"{[t.id for t in stuck]}"
                    )
            except Exception as e:
                logger.error(f"❌ Maintenance pass failed: {e}")

            try:
                await asyncio.wait_for(shutdown_manager.shutdown_event.wait(), timeout=MAINTENANCE_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                continue

    async def start(self) -> bool:
        Config.log_environment_config()

        if not await self.initialize_database():
            logger.error(f"❌ Startup aborted: {self.startup_errors}")
            return False
        await self.seed_trading_pairs()

        shutdown_manager.setup_signal_handlers()
        create_managed_task(self.run_maintenance(), name="maintenance")

        if self.startup_errors:
            logger.warning(f"⚠️ Started with errors: {self.startup_errors}")
        else:
            logger.info("✅ TradePort core started")
        return True


async def main() -> int:
    configure_logging()
    manager = StartupManager()
    if not await manager.start():
        return 1
    await shutdown_manager.shutdown_event.wait()
    await shutdown_manager.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
