#!/usr/bin/env python3
"""
Put FAILED email digests back in the queue.

FAILED entries are never retried automatically. Once the cause is fixed
(bad API key, provider outage), run this script and the next flush picks
them up again. An entry is skipped when its (conversation, recipient) pair
already has a PENDING digest.

Usage:
    # Reset every FAILED digest
    python -m scripts.reset_failed_emails

    # Only digests that failed in the last 24 hours
    python -m scripts.reset_failed_emails --since-hours 24
"""

import argparse
import asyncio
import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import select

from database.connection import get_async_session
from database.models import EmailNotificationQueue, EmailNotificationStatus

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


async def reset_failed_emails(since_hours: int | None = None) -> int:
    """
    Move FAILED digests back to PENDING.

    Returns:
        Number of entries reset
    """
    async with get_async_session() as session:
        query = select(EmailNotificationQueue).where(
            EmailNotificationQueue.status == EmailNotificationStatus.FAILED
        )
        if since_hours is not None:
            query = query.where(
                EmailNotificationQueue.updated_at >= datetime.now(UTC) - timedelta(hours=since_hours)
            )
        failed = (await session.execute(query.order_by(EmailNotificationQueue.created_at))).scalars().all()

        pending = await session.execute(
            select(EmailNotificationQueue.conversation_id, EmailNotificationQueue.recipient_user_id).where(
                EmailNotificationQueue.status == EmailNotificationStatus.PENDING
            )
        )
        pending_pairs = {(row.conversation_id, row.recipient_user_id) for row in pending.all()}

        reset_count = 0
        for entry in failed:
            pair = (entry.conversation_id, entry.recipient_user_id)
            if pair in pending_pairs:
                logger.info(f"Skipping digest {entry.id}: a PENDING digest already exists")
                continue
            entry.status = EmailNotificationStatus.PENDING
            entry.failure_reason = None
            pending_pairs.add(pair)
            reset_count += 1

        await session.commit()

    logger.info(f"Reset {reset_count} failed digests to PENDING")
    return reset_count


def main() -> None:
    parser = argparse.ArgumentParser(description="Requeue FAILED email digests")
    parser.add_argument("--since-hours", type=int, default=None, help="Only digests failed in this window")
    args = parser.parse_args()
    asyncio.run(reset_failed_emails(args.since_hours))


if __name__ == "__main__":
    main()
