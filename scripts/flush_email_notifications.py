#!/usr/bin/env python3
"""
One-shot script to send every PENDING email digest now.

Usage:
    python -m scripts.flush_email_notifications
"""

import asyncio
import logging
import sys

from messaging.services.email_notification_service import send_pending_notifications

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


async def main() -> int:
    stats = await send_pending_notifications()
    logger.info(
        f"Processed {stats['processed']} digests: "
        f"sent={stats['sent']}, failed={stats['failed']}"
    )
    return 1 if stats["failed"] else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
