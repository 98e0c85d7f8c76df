"""
Email notification worker - Flushes PENDING email digests.

Recipients who were offline when a message arrived have a PENDING queue entry
accumulating a message count. Every EMAIL_NOTIFICATION_INTERVAL_MINUTES this
worker renders one digest per entry and delivers it through Resend.

Architecture:
    - Runs once at startup, then on a fixed interval via `schedule`
    - Each pass runs in its own event loop; the DB engine and the Redis
      client are released at the end of the pass so the next loop starts clean
    - Failed deliveries are marked FAILED and never retried automatically
      (scripts/reset_failed_emails.py puts them back in the queue)
    - Provides health check monitoring
"""

import asyncio
import logging
import signal
import time
from datetime import UTC, datetime
from typing import Any

import schedule

from database.connection import engine
from messaging.services.email_notification_service import send_pending_notifications
from messaging.workers.health import update_health_check
from shared.config import get_settings
from shared.logging_config import configure_logging
from shared.redis_client import close_redis_client, reset_redis_client
from shared.startup_validator import StartupValidationError, validate_startup_config

logger = logging.getLogger(__name__)

WORKER_NAME = "email_notification_worker"

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum: int, frame: Any) -> None:
    """Finish the current flush, then exit."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


async def flush_email_notifications() -> dict[str, int]:
    """
    Run one flush pass and record it in the health file.

    Returns:
        {"processed": int, "sent": int, "failed": int}
    """
    start_time = datetime.now(UTC)
    logger.info(f"Starting email digest flush at {start_time.isoformat()}")

    try:
        stats = await send_pending_notifications()
    except Exception as e:
        logger.exception(f"Email digest flush aborted: {e}")
        update_health_check(WORKER_NAME, datetime.now(UTC), "unhealthy", error=str(e))
        raise
    finally:
        await engine.dispose()
        await close_redis_client()
        reset_redis_client()

    duration = (datetime.now(UTC) - start_time).total_seconds()
    logger.info(
        f"Completed email digest flush in {duration:.2f}s: "
        f"sent={stats['sent']}, failed={stats['failed']}"
    )
    update_health_check(
        WORKER_NAME,
        datetime.now(UTC),
        "healthy" if stats["failed"] == 0 else "unhealthy",
        **stats,
    )
    return stats


def run_flush_job() -> None:
    """Scheduler entry point; a failing pass must not kill the loop."""
    try:
        asyncio.run(flush_email_notifications())
    except Exception as e:
        logger.error(f"Error in email digest flush: {e}", exc_info=True)


def run_email_notification_worker() -> None:
    """
    Main worker entry point - flushes digests every EMAIL_NOTIFICATION_INTERVAL_MINUTES.

    Handles graceful shutdown on SIGTERM/SIGINT.
    """
    configure_logging()
    settings = get_settings()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(validate_startup_config(require_email=True))
    except StartupValidationError as e:
        logger.critical(f"Email notification worker startup blocked: {e}")
        raise SystemExit(1) from e
    finally:
        reset_redis_client()

    interval = settings.EMAIL_NOTIFICATION_INTERVAL_MINUTES
    logger.info(f"Email notification worker starting (interval={interval}min)")

    run_flush_job()
    schedule.every(interval).minutes.do(run_flush_job)

    while not shutdown_requested:
        schedule.run_pending()
        time.sleep(1)

    schedule.clear()
    logger.info("Email notification worker shutting down gracefully")


if __name__ == "__main__":
    run_email_notification_worker()
