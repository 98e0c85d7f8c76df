"""
Redis-backed gate for notification emails.

One key per (conversation, recipient) marks an open rate-limit window:

    email:rate_limit:{conversation_id}:{recipient_id} -> ISO timestamp, EX window

try_acquire() is a single SET NX EX, so two concurrent senders cannot both open
a window. Every check fails open: if Redis is unreachable the email is allowed,
since a missed notification is worse than an extra one.
"""

import logging
from datetime import UTC, datetime
from uuid import UUID

from shared.config import get_settings
from shared.redis_client import get_redis_client, with_timeout

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY_PREFIX = "email:rate_limit"


def rate_limit_key(conversation_id: UUID | str, recipient_id: UUID | str) -> str:
    return f"{RATE_LIMIT_KEY_PREFIX}:{conversation_id}:{recipient_id}"


def _window(window_seconds: int | None) -> int:
    return window_seconds or get_settings().EMAIL_RATE_LIMIT_WINDOW_SECONDS


async def can_send(conversation_id: UUID | str, recipient_id: UUID | str) -> bool:
    """Return True when no rate-limit window is open for the pair (read only)."""
    key = rate_limit_key(conversation_id, recipient_id)
    try:
        exists = await with_timeout(get_redis_client().exists(key))
        return exists == 0
    except Exception as e:
        logger.warning(
            f"Rate limit check failed for {key}, allowing email: {e}",
            extra={"conversation_id": conversation_id, "user_id": recipient_id},
        )
        return True


async def try_acquire(
    conversation_id: UUID | str,
    recipient_id: UUID | str,
    window_seconds: int | None = None,
) -> bool:
    """
    Atomically open a rate-limit window for the pair.

    Returns:
        True if the window was opened by this call (or Redis is unavailable),
        False if a window is already open
    """
    key = rate_limit_key(conversation_id, recipient_id)
    try:
        acquired = await with_timeout(
            get_redis_client().set(
                key,
                datetime.now(UTC).isoformat(),
                nx=True,
                ex=_window(window_seconds),
            )
        )
        return bool(acquired)
    except Exception as e:
        logger.warning(
            f"Rate limit acquire failed for {key}, allowing email: {e}",
            extra={"conversation_id": conversation_id, "user_id": recipient_id},
        )
        return True


async def record_sent(
    conversation_id: UUID | str,
    recipient_id: UUID | str,
    window_seconds: int | None = None,
) -> None:
    """Restart the window at the moment an email was actually delivered."""
    key = rate_limit_key(conversation_id, recipient_id)
    try:
        await with_timeout(
            get_redis_client().set(
                key, datetime.now(UTC).isoformat(), ex=_window(window_seconds)
            )
        )
    except Exception as e:
        logger.error(f"Failed to record email send for {key}: {e}")


async def reset(conversation_id: UUID | str, recipient_id: UUID | str) -> None:
    """Close the window so the next offline message may open a new digest."""
    key = rate_limit_key(conversation_id, recipient_id)
    try:
        await with_timeout(get_redis_client().delete(key))
    except Exception as e:
        logger.error(f"Failed to reset rate limit {key}: {e}")


async def get_ttl(conversation_id: UUID | str, recipient_id: UUID | str) -> int | None:
    """Seconds left in the open window, or None when no window is open."""
    key = rate_limit_key(conversation_id, recipient_id)
    try:
        ttl = await with_timeout(get_redis_client().ttl(key))
    except Exception as e:
        logger.warning(f"Failed to read TTL for {key}: {e}")
        return None
    return ttl if ttl and ttl > 0 else None

