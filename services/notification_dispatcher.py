"""
Notification Dispatcher
Fire-and-forget user notifications that never block or roll back the caller
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from config import Config
from database import async_managed_session
from models import NotificationPriority, NotificationQueue
from utils.graceful_shutdown import create_managed_task, shutdown_manager

logger = logging.getLogger(__name__)


@dataclass
class NotificationRequest:
    recipient_wallet: str
    notification_type: str
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    priority: str = NotificationPriority.MEDIUM.value
    action_url: Optional[str] = None


NotificationSender = Callable[[NotificationRequest], Awaitable[None]]


async def persist_notification(request: NotificationRequest) -> None:
    """Default sender: enqueue into notification_queue for the delivery workers"""
    async with async_managed_session() as session:
        session.add(NotificationQueue(
            recipient_wallet=request.recipient_wallet,
            notification_type=request.notification_type,
            title=request.title,
            message=request.message,
            data=request.data,
            priority=request.priority,
            action_url=request.action_url,
        ))


class NotificationDispatcher:
    """Schedules notification delivery as tracked background tasks"""

    def __init__(self, sender: Optional[NotificationSender] = None):
        self._sender = sender or persist_notification

    def set_sender(self, sender: NotificationSender):
        self._sender = sender

    def notify(
        self,
        recipient_wallet: str,
        notification_type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        priority: str = NotificationPriority.MEDIUM.value,
        action_url: Optional[str] = None,
    ):
        """Schedule a notification; returns immediately and never raises"""
        request = NotificationRequest(
            recipient_wallet=(recipient_wallet or "").lower(),
            notification_type=notification_type,
            title=title,
            message=message,
            data=data or {},
            priority=priority,
            action_url=action_url,
        )
        if not Config.NOTIFICATION_PERSIST_ENABLED and self._sender is persist_notification:
            logger.debug(f"Notification persistence disabled, dropping {notification_type} for {request.recipient_wallet}")
            return None
        try:
            return create_managed_task(
                self._deliver(request), name=f"notify:{notification_type}:{request.recipient_wallet}"
            )
        except Exception as e:
            logger.error(f"NOTIFICATION_DISPATCH_FAILED: type={notification_type}, recipient={request.recipient_wallet}, error={e}")
            return None

    async def _deliver(self, request: NotificationRequest):
        try:
            await self._sender(request)
            logger.info(
                f"📨 Notification sent: type={request.notification_type}, "
                f"recipient={request.recipient_wallet}, priority={request.priority}"
            )
        except Exception as e:
            logger.error(
                f"NOTIFICATION_DISPATCH_FAILED: type={request.notification_type}, "
                f"recipient={request.recipient_wallet}, error={e}"
            )

    async def drain(self, timeout: float = 5.0) -> bool:
        """Wait for in-flight notifications (tests and shutdown)"""
        return await shutdown_manager.wait_for_tasks(timeout=timeout)


notification_dispatcher = NotificationDispatcher()
