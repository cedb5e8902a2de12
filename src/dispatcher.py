"""Notification dispatcher: persist, then fan out to side channels.

Handles:
- Persisting the Notification row (the durable record; failures propagate)
- Realtime push to the recipient's open sessions
- Email and WhatsApp delivery
- Error isolation (one channel failure doesn't block others)
"""

import asyncio
import logging
from typing import Awaitable, Optional

from application import (
    AbstractNotificationDispatcher,
    AbstractUnitOfWork,
    NotificationEvent,
    build_notification,
)
from channels import EmailChannel, WhatsAppChannel
from model import Notification
from realtime import ConnectionRegistry

logger = logging.getLogger(__name__)


def _realtime_payload(notification: Notification) -> dict:
    return {
        "type": "notification",
        "data": {
            "id": str(notification.id),
            "title": notification.title,
            "message": notification.message,
            "type": notification.type.value,
            "is_read": notification.is_read,
            "created_at": notification.created_at.isoformat(),
        },
    }


class NotificationDispatcher(AbstractNotificationDispatcher):
    """Delivers one event to the recipient over every applicable channel."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        email: Optional[EmailChannel] = None,
        whatsapp: Optional[WhatsAppChannel] = None,
    ):
        self.registry = registry
        self.email = email
        self.whatsapp = whatsapp

    async def dispatch(
        self, event: NotificationEvent, uow: AbstractUnitOfWork
    ) -> Notification:
        notification = build_notification(event)
        with uow:
            uow.notifications.save(notification)
            uow.commit()

        async def _send_safe(channel: str, send: Awaitable) -> bool:
            try:
                return bool(await send)
            except Exception as e:
                logger.error(
                    f"Channel {channel} failed for user {event.recipient_id}: {e}",
                    exc_info=True,
                )
                return False

        tasks = [
            _send_safe(
                "realtime",
                self.registry.push_to_user(event.recipient_id, _realtime_payload(notification)),
            )
        ]
        if event.email is not None and self.email is not None:
            tasks.append(_send_safe("email", self.email.send(event.email, event.message)))
        if (
            event.whatsapp is not None
            and event.whatsapp.to
            and self.whatsapp is not None
        ):
            tasks.append(_send_safe("whatsapp", self.whatsapp.send(event.whatsapp)))

        await asyncio.gather(*tasks)
        logger.info(f"Dispatched '{event.title}' to user {event.recipient_id}")
        return notification
