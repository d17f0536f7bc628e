"""Notification intents emitted by the transaction lifecycle.

The core only publishes intents onto a durable RabbitMQ queue; rendering and
mail delivery happen in ``workers.py``. Publishing is fire-and-forget: the
transition that triggered it has already committed, a publish runs as a
background task bounded by ``NOTIFY_TIMEOUT`` and a broker outage is only
logged.
"""

import asyncio
import json
import logging
from typing import Optional, Set

from aio_pika import DeliveryMode, Message, connect_robust

from . import config
from .config import NOTIFICATION_QUEUE, RABBITMQ_URL

logger = logging.getLogger(__name__)

TRANSACTION_ACCEPTED = "transaction_accepted"
TRANSACTION_REJECTED = "transaction_rejected"


class NotificationPublisher:
    def __init__(self, url: str = RABBITMQ_URL, queue_name: str = NOTIFICATION_QUEUE) -> None:
        self.url = url
        self.queue_name = queue_name
        self._connection = None
        self._channel = None
        self._lock = asyncio.Lock()

    async def _ensure_channel(self):
        async with self._lock:
            if self._channel is None or self._channel.is_closed:
                if self._connection is None:
                    self._connection = await connect_robust(self.url)
                self._channel = await self._connection.channel()
                await self._channel.declare_queue(self.queue_name, durable=True)
            return self._channel

    async def publish(self, payload: dict) -> None:
        channel = await self._ensure_channel()
        message = Message(
            json.dumps(payload, default=str).encode(),
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
        )
        await channel.default_exchange.publish(message, routing_key=self.queue_name)

    async def close(self) -> None:
        async with self._lock:
            if self._connection is not None:
                await self._connection.close()
            self._connection = None
            self._channel = None


publisher = NotificationPublisher()

# Strong references to in-flight publishes; the event loop only keeps weak ones.
_pending: Set[asyncio.Task] = set()


def get_notifier() -> NotificationPublisher:
    return publisher


async def _publish(notifier: NotificationPublisher, payload: dict) -> bool:
    try:
        await asyncio.wait_for(notifier.publish(payload), config.NOTIFY_TIMEOUT)
    except Exception:
        logger.warning(
            "Failed to publish %s notification for transaction %s",
            payload.get("kind"), payload.get("transaction_id"), exc_info=True,
        )
        return False
    return True


def notify(notifier: Optional[NotificationPublisher], payload: dict) -> Optional[asyncio.Task]:
    """Schedule ``payload`` for publishing and return without waiting on the broker."""
    if notifier is None:
        return None
    task = asyncio.create_task(_publish(notifier, payload))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain_notifications() -> None:
    """Wait for every scheduled publish to finish or time out."""
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)


def accepted_payload(transaction, user, event) -> dict:
    return {
        "kind": TRANSACTION_ACCEPTED,
        "email": user.email,
        "user_name": user.name,
        "transaction_id": str(transaction.id),
        "event_name": event.name,
        "quantity": transaction.quantity,
        "total_amount": transaction.total_amount,
    }


def rejected_payload(transaction, user, event, reason: Optional[str] = None) -> dict:
    return {
        "kind": TRANSACTION_REJECTED,
        "email": user.email,
        "user_name": user.name,
        "transaction_id": str(transaction.id),
        "event_name": event.name,
        "quantity": transaction.quantity,
        "reason": reason,
        "points_refunded": transaction.points_used,
        "coupon_refunded": transaction.coupon_id is not None,
        "seats_released": transaction.quantity,
    }
