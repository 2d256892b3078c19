"""
Distributed Lock Service
Database-backed leases serializing work across service instances (per-pair matching)
"""

import asyncio
import logging
import os
import socket
import time
import hashlib
import uuid
from datetime import timedelta
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from database import async_managed_session
from models import DistributedLock, utc_now_naive
from services.errors import ConflictError

logger = logging.getLogger(__name__)


class LockResult:
    """Result object for lock acquisition attempts"""

    def __init__(self, acquired: bool, lock_key: str):
        self.acquired = acquired
        self.lock_key = lock_key
        self.error: Optional[str] = None
        self.owner: Optional[str] = None
        self.attempts = 0


class DistributedLockService:
    """Service for managing distributed locks to prevent race conditions"""

    def __init__(self, default_timeout: int = 30):
        self.default_timeout = default_timeout
        self.service_id = f"{socket.gethostname()}:{os.getpid()}:{int(time.time())}"

    def generate_lock_key(self, lock_type: str, identifier: str, additional_key: str = "") -> str:
        """Generate unique lock key for a specific operation"""
        key_data = f"{lock_type}:{identifier}:{additional_key}"
        return f"{lock_type}:{hashlib.sha256(key_data.encode()).hexdigest()[:32]}"

    async def try_acquire(
        self, lock_key: str, timeout: Optional[int] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> LockResult:
        """Single acquisition attempt; expired leases are cleaned up and retried once"""
        lock_timeout = timeout or self.default_timeout
        result = LockResult(acquired=False, lock_key=lock_key)
        owner = f"{self.service_id}:{uuid.uuid4().hex[:12]}"

        for cleanup_pass in (False, True):
            now = utc_now_naive()
            try:
                async with async_managed_session() as session:
                    session.add(DistributedLock(
                        lock_name=lock_key,
                        locked_by=owner,
                        locked_at=now,
                        expires_at=now + timedelta(seconds=lock_timeout),
                        lock_metadata=metadata,
                    ))
                result.acquired = True
                result.owner = owner
                logger.debug(
                    f"DISTRIBUTED_LOCK_ACQUIRED: Key={lock_key}, Owner={owner}, Timeout={lock_timeout}s"
                )
                return result
            except IntegrityError:
                if cleanup_pass:
                    break
                removed = await self._delete_if_expired(lock_key)
                if not removed:
                    break

        result.error = f"Lock {lock_key} held by another worker"
        return result

    async def _delete_if_expired(self, lock_key: str) -> bool:
        async with async_managed_session() as session:
            result = await session.execute(
                delete(DistributedLock).where(
                    DistributedLock.lock_name == lock_key,
                    DistributedLock.expires_at < utc_now_naive(),
                )
            )
            if result.rowcount:
                logger.warning(f"EXPIRED_LOCK_CLEANUP: Key={lock_key}")
            return bool(result.rowcount)

    @asynccontextmanager
    async def acquire(
        self,
        lock_key: str,
        timeout: Optional[int] = None,
        wait_seconds: float = 10.0,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        """
        Hold ``lock_key`` for the duration of the block.

        Polls with capped backoff for up to ``wait_seconds``; raises ConflictError when
        the lock stays busy. The lease is always released on exit.

        Usage:
            async with lock_service.acquire("matching:ETH-USDC"):
                ...  # exclusive section
        """
        deadline = time.monotonic() + wait_seconds
        delay = 0.01
        attempts = 0
        lock_result = None

        while True:
            attempts += 1
            lock_result = await self.try_acquire(lock_key, timeout=timeout, metadata=metadata)
            if lock_result.acquired:
                break
            if time.monotonic() >= deadline:
                logger.warning(
                    f"DISTRIBUTED_LOCK_COLLISION: Key={lock_key}, Attempts={attempts}, Waited={wait_seconds}s"
                )
                raise ConflictError(
                    f"Resource busy, could not acquire lock {lock_key}",
                    is_retryable=True,
                    details={"lock": lock_key, "attempts": attempts},
                )
            await asyncio.sleep(delay)
            delay = min(delay * 2, 0.25)

        lock_result.attempts = attempts
        try:
            yield lock_result
        finally:
            await self._release_lock(lock_key, lock_result.owner)

    async def _release_lock(self, lock_key: str, owner: str):
        """Release a lease only if this acquisition still owns it"""
        try:
            async with async_managed_session() as session:
                result = await session.execute(
                    delete(DistributedLock).where(
                        DistributedLock.lock_name == lock_key,
                        DistributedLock.locked_by == owner,
                    )
                )
            if result.rowcount:
                logger.debug(f"DISTRIBUTED_LOCK_RELEASED: Key={lock_key}, Owner={owner}")
            else:
                logger.warning(f"Lock record not found for key {lock_key} during release")
        except Exception as e:
            logger.error(f"Failed to release lock {lock_key}: {e}")

    async def cleanup_expired_locks(self) -> int:
        """Delete every expired lease"""
        async with async_managed_session() as session:
            result = await session.execute(
                delete(DistributedLock).where(DistributedLock.expires_at < utc_now_naive())
            )
        count = result.rowcount or 0
        if count > 0:
            logger.info(f"Cleaned up {count} expired distributed locks")
        return count

    async def get_active_locks(self) -> list:
        """Get all currently active locks for monitoring"""
        now = utc_now_naive()
        async with async_managed_session() as session:
            rows = (await session.execute(
                select(DistributedLock).where(DistributedLock.expires_at > now)
            )).scalars().all()

        return [{
            "lock_name": lock.lock_name,
            "locked_by": lock.locked_by,
            "locked_at": lock.locked_at.isoformat() if lock.locked_at else None,
            "expires_at": lock.expires_at.isoformat(),
            "age_seconds": (now - lock.locked_at).total_seconds() if lock.locked_at else 0,
        } for lock in rows]


# Global instance for service-wide use
distributed_lock_service = DistributedLockService()
