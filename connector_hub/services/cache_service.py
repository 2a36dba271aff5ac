"""Redis pub/sub for sync status events and tenant notifications."""

import json
import logging
from typing import Any, Dict, Optional

import redis

from connector_hub.core.config import settings

logger = logging.getLogger("connector_hub.events")


def sync_log_channel(sync_log_id: int) -> str:
    return f"sync_log:{sync_log_id}"


def tenant_channel(tenant_id: int) -> str:
    return f"tenant:{tenant_id}:notifications"


class CacheService:
    """Redis-backed event fan-out. Redis outages never fail a sync."""

    def __init__(self):
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                max_connections=100,
            )
        return self._client

    def publish(self, channel: str, message: str) -> None:
        """Publish a message to a Redis channel."""
        try:
            self.client.publish(channel, message)
        except redis.RedisError:
            logger.debug("Redis unavailable, dropped event on %s", channel)

    def publish_json(self, channel: str, payload: Dict[str, Any]) -> None:
        self.publish(channel, json.dumps(payload, default=str))

    def sync_event(self, sync_log_id: int, status: str, **extra) -> None:
        """Announce a sync log status change."""
        self.publish_json(sync_log_channel(sync_log_id), dict(sync_log_id=sync_log_id, status=status, **extra))

    def notify_tenant(self, tenant_id: int, level: str, title: str, message: str, **extra) -> None:
        """Fire-and-forget alert for the tenant's notification center."""
        self.publish_json(
            tenant_channel(tenant_id),
            dict(level=level, title=title, message=message, **extra),
        )

    def health_check(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return self.client.ping()
        except redis.RedisError:
            return False


cache_service = CacheService()
