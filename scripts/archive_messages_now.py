#!/usr/bin/env python3
"""
One-shot script to apply the message retention policy immediately.

Runs the same pass the message archiver runs daily. Useful after changing
MESSAGE_RETENTION_DAYS or MESSAGE_HARD_DELETE_AFTER_DAYS.

Usage:
    python -m scripts.archive_messages_now
"""

import asyncio
import logging

from messaging.workers.message_archiver import run_archival

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)


async def main() -> None:
    result = await run_archival()
    logger.info(
        f"Archived {result['archived_count']} messages, "
        f"deleted {result['deleted_count']} messages"
    )


if __name__ == "__main__":
    asyncio.run(main())
