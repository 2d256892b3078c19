"""
Graceful Shutdown Handler
Tracks background work (notification delivery, maintenance loop) and runs cleanup on exit

Shutdown order: set the event so loops stop scheduling, let in-flight side effects
finish within the grace period, cancel what is left, then run cleanup callbacks in
reverse registration order (the database engine is disposed last).
"""

import asyncio
import logging
import signal
import sys
from typing import Callable, List, Optional, Set

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 5.0


class GracefulShutdownManager:
    """Owns the shutdown event, the tracked task set and the cleanup callbacks"""

    def __init__(self, grace_seconds: float = SHUTDOWN_GRACE_SECONDS):
        self.grace_seconds = grace_seconds
        self.shutdown_event = asyncio.Event()
        self.running_tasks: Set[asyncio.Task] = set()
        self.cleanup_tasks: List[Callable] = []
        self._shutdown_started = False
        self._shutdown_complete = asyncio.Event()
        self._shutdown_task: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self.running_tasks if not task.done())

    def add_cleanup_task(self, cleanup_func: Callable):
        self.cleanup_tasks.append(cleanup_func)

    def track_task(self, task: asyncio.Task):
        self.running_tasks.add(task)
        task.add_done_callback(self.running_tasks.discard)

    async def wait_for_tasks(self, timeout: float = SHUTDOWN_GRACE_SECONDS) -> bool:
        """Wait for tracked tasks to finish without cancelling them"""
        pending = [task for task in self.running_tasks if not task.done()]
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            names = sorted(task.get_name() for task in still_pending)
            logger.warning(f"⚠️ {len(still_pending)} tracked tasks still running after {timeout}s: {names}")
        return not still_pending

    async def _cancel_remaining(self):
        remaining = [task for task in self.running_tasks if not task.done()]
        if not remaining:
            return
        logger.info(f"📋 Cancelling {len(remaining)} pending tasks...")
        for task in remaining:
            task.cancel()
        await asyncio.gather(*remaining, return_exceptions=True)

    async def _run_cleanup(self):
        for cleanup_func in reversed(self.cleanup_tasks):
            name = getattr(cleanup_func, "__name__", repr(cleanup_func))
            try:
                result = cleanup_func()
                if asyncio.iscoroutine(result):
                    await result
                logger.debug(f"✅ Cleanup completed: {name}")
            except Exception as e:
                logger.error(f"❌ Cleanup failed for {name}: {e}")

    async def shutdown(self):
        """Stop background work and release resources; later calls wait for the first"""
        if self._shutdown_started:
            await self._shutdown_complete.wait()
            return
        self._shutdown_started = True
        logger.info(f"🔄 Starting graceful shutdown ({self.in_flight} tasks in flight)...")

        self.shutdown_event.set()
        await self.wait_for_tasks(timeout=self.grace_seconds)
        await self._cancel_remaining()
        await self._run_cleanup()
        self._shutdown_complete.set()

        logger.info("✅ Graceful shutdown completed")

    def request_shutdown(self, signum: Optional[int] = None):
        if signum is not None:
            logger.info(f"🛑 Received signal {signum}, initiating shutdown...")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No event loop running, exiting immediately")
            sys.exit(0)
        self._shutdown_task = loop.create_task(self.shutdown(), name="graceful-shutdown")

    def setup_signal_handlers(self):
        """Route SIGINT/SIGTERM to shutdown on the running loop"""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_shutdown, signum)
            except NotImplementedError:
                # Event loops without signal support (Windows)
                signal.signal(signum, lambda received, frame: self.request_shutdown(received))


# Global shutdown manager instance
shutdown_manager = GracefulShutdownManager()


def create_managed_task(coro, name: Optional[str] = None) -> asyncio.Task:
    """Create a task tracked for shutdown"""
    task = asyncio.create_task(coro, name=name)
    shutdown_manager.track_task(task)
    return task


async def cleanup_database_connections():
    from database import dispose_engine
    await dispose_engine()


shutdown_manager.add_cleanup_task(cleanup_database_connections)
