"""Notification publishers.

The core hands every DealNotification to a publisher; rendering and
delivery to users happen outside this service.

    - RedisNotificationPublisher: JSON envelopes on a redis pub/sub channel.
    - LoggingNotificationPublisher: structlog only, used when redis is down.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from multisig_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import redis.asyncio as aioredis

    from multisig_escrow.domain.notifications import DealNotification

logger = get_logger(__name__)


class LoggingNotificationPublisher:
    async def publish(self, notification: DealNotification) -> None:
        logger.info(
            "notification.published",
            notification=notification.event.value,
            deal_id=notification.deal_id,
            recipients=list(notification.recipients),
            transport="log",
        )


class RedisNotificationPublisher:
    """Publishes notifications to a redis channel.

    Transport errors are logged and swallowed: a lost notification never
    rolls back the state change that produced it.
    """

    def __init__(self, redis: aioredis.Redis, channel: str) -> None:
        self._redis = redis
        self._channel = channel

    async def publish(self, notification: DealNotification) -> None:
        payload = json.dumps(notification.to_dict(), default=str)
        try:
            receivers = await self._redis.publish(self._channel, payload)
        except RedisError as e:
            logger.error(
                "notification.publish_failed",
                notification=notification.event.value,
                deal_id=notification.deal_id,
                error=str(e),
            )
            return
        logger.info(
            "notification.published",
            notification=notification.event.value,
            deal_id=notification.deal_id,
            channel=self._channel,
            receivers=receivers,
        )
