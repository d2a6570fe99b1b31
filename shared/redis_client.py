"""
Redis client singleton for store change notifications.

The SQL document store publishes one message per write on
``store_changes:{collection}``; live subscriptions listen on those channels
and re-query when a change lands.
"""

import json
import logging
from functools import lru_cache
from typing import Any

import redis.asyncio as redis
from redis import ConnectionError as RedisConnectionError

from shared.config import get_settings

CHANGE_CHANNEL_PREFIX = "store_changes"

logger = logging.getLogger(__name__)


def change_channel(collection: str) -> str:
    """Pub/sub channel carrying change events for one collection."""
    return f"{CHANGE_CHANNEL_PREFIX}:{collection}"


@lru_cache
def get_redis_client() -> "redis.Redis[str]":
    """
    Get cached Redis client instance with production-ready configuration.

    - Connection pooling (max 20 connections)
    - Automatic retry on timeout for transient failures
    - Health check pings every 30 seconds

    Returns:
        Redis async client configured with connection pool and retry logic
    """
    settings = get_settings()

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=True,
            retry_on_timeout=True,
            health_check_interval=30,
        )

        logger.info(
            f"Redis client initialized: {settings.REDIS_URL} "
            f"(max_connections=20, retry_on_timeout=True, health_check_interval=30s)"
        )
        return client

    except RedisConnectionError as e:
        logger.error(
            f"Redis connection failed: {e}. Live subscriptions unavailable.",
            exc_info=True
        )
        raise


async def publish_to_channel(channel: str, message: dict[str, Any]) -> None:
    """
    Publish a message to a Redis pub/sub channel.

    Args:
        channel: Channel name
        message: Message dict to publish (will be JSON-serialized)

    Raises:
        RedisConnectionError: If Redis is unreachable
    """
    client = get_redis_client()

    json_message = json.dumps(message, default=str)

    try:
        await client.publish(channel, json_message)
        logger.debug(f"Message published to channel '{channel}': {json_message[:100]}")

    except RedisConnectionError as e:
        logger.error(f"Redis connection error while publishing to '{channel}': {e}")
        raise


async def close_redis_client() -> None:
    """
    Close Redis connection gracefully.

    Note:
        Should be called during application shutdown.
    """
    try:
        client = get_redis_client()
        await client.close()
        logger.info("Redis client closed")
    except Exception as e:
        logger.warning(f"Error closing Redis client: {e}")
