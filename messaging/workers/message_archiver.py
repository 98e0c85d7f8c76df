"""
Message archiver worker - Applies the message retention policy.

Daily at ARCHIVAL_JOB_TIME:
    1. Soft-delete: messages older than MESSAGE_RETENTION_DAYS get archived_at set.
       Archived messages disappear from history pages, previews and digests.
    2. Hard-delete (only when MESSAGE_HARD_DELETE_AFTER_DAYS > 0): messages
       archived for longer than that window are removed with their attachments.

The two steps are independent: a failure in one is logged and counted as 0
without aborting the other.
"""

import asyncio
import logging
import signal
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import schedule
from sqlalchemy import delete, select, update

from database.connection import engine, get_async_session
from database.models import Message, MessageAttachment
from messaging.workers.health import update_health_check
from shared.config import get_settings
from shared.logging_config import configure_logging

logger = logging.getLogger(__name__)

WORKER_NAME = "message_archiver"

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum: int, frame: Any) -> None:
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


async def archive_old_messages(now: datetime | None = None) -> int:
    """
    Set archived_at on every unarchived message past the retention window.

    Returns:
        Number of messages archived (0 on failure)
    """
    settings = get_settings()
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=settings.MESSAGE_RETENTION_DAYS)

    try:
        async with get_async_session() as session:
            result = await session.execute(
                update(Message)
                .where(Message.archived_at.is_(None), Message.created_at < cutoff)
                .values(archived_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
    except Exception as e:
        logger.error(f"Message archival failed: {e}", exc_info=True)
        return 0

    archived_count = result.rowcount or 0
    logger.info(
        f"Archived {archived_count} messages older than {settings.MESSAGE_RETENTION_DAYS} days"
    )
    return archived_count


async def hard_delete_archived_messages(now: datetime | None = None) -> int:
    """
    Permanently remove messages archived longer than MESSAGE_HARD_DELETE_AFTER_DAYS.

    Returns:
        Number of messages deleted (0 when disabled or on failure)
    """
    settings = get_settings()
    if settings.MESSAGE_HARD_DELETE_AFTER_DAYS <= 0:
        logger.debug("Hard delete disabled (MESSAGE_HARD_DELETE_AFTER_DAYS=0)")
        return 0

    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=settings.MESSAGE_HARD_DELETE_AFTER_DAYS)

    try:
        async with get_async_session() as session:
            expired_ids = select(Message.id).where(
                Message.archived_at.is_not(None), Message.archived_at < cutoff
            )
            await session.execute(
                delete(MessageAttachment)
                .where(MessageAttachment.message_id.in_(expired_ids))
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(
                delete(Message)
                .where(Message.archived_at.is_not(None), Message.archived_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
    except Exception as e:
        logger.error(f"Hard delete of archived messages failed: {e}", exc_info=True)
        return 0

    deleted_count = result.rowcount or 0
    logger.info(
        f"Deleted {deleted_count} messages archived more than "
        f"{settings.MESSAGE_HARD_DELETE_AFTER_DAYS} days ago"
    )
    return deleted_count


async def run_archival(now: datetime | None = None) -> dict[str, int]:
    """
    One archival pass: soft-delete, then hard-delete.

    Returns:
        {"archived_count": int, "deleted_count": int}
    """
    start_time = datetime.now(UTC)
    logger.info(f"Starting message archival run at {start_time.isoformat()}")

    archived_count = await archive_old_messages(now)
    deleted_count = await hard_delete_archived_messages(now)

    duration = (datetime.now(UTC) - start_time).total_seconds()
    logger.info(
        f"Completed archival run in {duration:.2f}s: "
        f"archived={archived_count}, deleted={deleted_count}"
    )
    update_health_check(
        WORKER_NAME,
        datetime.now(UTC),
        "healthy",
        archived_count=archived_count,
        deleted_count=deleted_count,
    )
    return {"archived_count": archived_count, "deleted_count": deleted_count}


async def _run_archival_pass() -> dict[str, int]:
    try:
        return await run_archival()
    finally:
        await engine.dispose()


def run_archival_job() -> None:
    try:
        asyncio.run(_run_archival_pass())
    except Exception as e:
        logger.error(f"Error in message archival: {e}", exc_info=True)


def run_archival_worker() -> None:
    """
    Main worker entry point - runs the retention policy daily.

    Handles graceful shutdown on SIGTERM/SIGINT.
    """
    configure_logging()
    settings = get_settings()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info(
        f"Message archiver starting: retention={settings.MESSAGE_RETENTION_DAYS}d, "
        f"hard_delete_after={settings.MESSAGE_HARD_DELETE_AFTER_DAYS}d, "
        f"daily at {settings.ARCHIVAL_JOB_TIME} (local time)"
    )

    update_health_check(WORKER_NAME, datetime.now(UTC), "healthy", archived_count=0, deleted_count=0)

    schedule.every().day.at(settings.ARCHIVAL_JOB_TIME).do(run_archival_job)

    while not shutdown_requested:
        schedule.run_pending()
        time.sleep(60)

    schedule.clear()
    logger.info("Message archiver shutting down gracefully")


if __name__ == "__main__":
    run_archival_worker()
