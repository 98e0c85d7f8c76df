"""
Redis client singleton for presence, rate limiting and realtime fan-out.

This module provides a singleton Redis client configured for production reliability
with connection pooling, retry logic, and health checks.

Redis Key Patterns:
    - Presence: presence:connections:{user_id} (set of connection ids, expiring)
    - Room viewing: presence:room:{conversation_id}:{user_id} (set of connection ids)
    - Email gate: email:rate_limit:{conversation_id}:{recipient_id} (string, expiring)
    - Pub/sub: messaging:events (realtime envelopes shared by every API process)
"""

import asyncio
import json
import logging
from collections.abc import Awaitable
from functools import lru_cache
from typing import Any, TypeVar

import redis.asyncio as redis
from redis import ConnectionError as RedisConnectionError

from shared.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@lru_cache
def get_redis_client() -> "redis.Redis[str]":
    """
    Get cached Redis client instance with production-ready configuration.

    This function creates a singleton Redis client with:
    - Connection pooling (max 20 connections per process)
    - Automatic retry on timeout for transient failures
    - Health check pings every 30 seconds

    Returns:
        Redis async client configured with connection pool and retry logic

    Note:
        Uses @lru_cache to ensure only one Redis connection pool is created per
        process. Worker jobs that run each pass in a fresh event loop call
        reset_redis_client() afterwards so the next pass gets a new pool.
    """
    settings = get_settings()

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=True,
            retry_on_timeout=True,
            health_check_interval=30,
            socket_timeout=settings.REDIS_OPERATION_TIMEOUT_SECONDS,
            socket_connect_timeout=settings.REDIS_OPERATION_TIMEOUT_SECONDS,
        )

        logger.info(
            f"Redis client initialized: {settings.REDIS_URL} "
            f"(max_connections=20, retry_on_timeout=True, health_check_interval=30s)"
        )
        return client

    except RedisConnectionError as e:
        logger.error(
            f"Redis connection failed: {e}. Presence and email rate limiting "
            f"will fail open until Redis is reachable.",
            exc_info=True
        )
        raise

    except Exception as e:
        logger.error(
            f"Unexpected error creating Redis client: {e}",
            exc_info=True
        )
        raise


async def with_timeout(operation: Awaitable[T], timeout: float | None = None) -> T:
    """
    Await a Redis operation with an upper bound on its duration.

    Args:
        operation: Awaitable Redis call (command or pipeline execute)
        timeout: Seconds to wait; defaults to REDIS_OPERATION_TIMEOUT_SECONDS

    Raises:
        asyncio.TimeoutError: If the call does not complete in time
    """
    if timeout is None:
        timeout = get_settings().REDIS_OPERATION_TIMEOUT_SECONDS
    return await asyncio.wait_for(operation, timeout=timeout)


async def publish_to_channel(channel: str, message: dict[str, Any]) -> int:
    """
    Publish a message to a Redis pub/sub channel.

    Args:
        channel: Channel name
        message: Message dict to publish (will be JSON-serialized)

    Returns:
        Number of subscribers that received the message

    Raises:
        RedisError: If Redis is unreachable (callers decide how to degrade)
    """
    client = get_redis_client()
    json_message = json.dumps(message, default=str)

    try:
        receivers = await with_timeout(client.publish(channel, json_message))
        logger.debug(f"Message published to channel '{channel}': {json_message[:100]}")
        return int(receivers)

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
        await client.aclose()
        logger.info("Redis client closed")
    except Exception as e:
        logger.warning(f"Error closing Redis client: {e}")


def reset_redis_client() -> None:
    """Drop the cached client so the next call builds a pool on the current event loop."""
    get_redis_client.cache_clear()
