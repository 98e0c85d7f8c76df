#!/usr/bin/env python3
"""
Print the state of the email digest queue.

Shows how many digests sit in each status, then the most recent entries with
their salon, client and, for PENDING ones, how long the recipient's rate-limit
window stays open.

Usage:
    python -m scripts.check_email_queue
    python -m scripts.check_email_queue --limit 25
"""

import argparse
import asyncio
from typing import Any

from sqlalchemy import func, select

from database.connection import get_async_session
from database.models import EmailNotificationQueue, EmailNotificationStatus
from shared import email_rate_limiter


async def inspect_email_queue(limit: int = 10) -> dict[str, Any]:
    """
    Collect queue counts by status and the `limit` newest entries.

    Returns:
        {"counts": {status: n}, "recent": [entry dicts, newest first]}
    """
    async with get_async_session() as session:
        rows = await session.execute(
            select(EmailNotificationQueue.status, func.count()).group_by(
                EmailNotificationQueue.status
            )
        )
        counts = {status.value: 0 for status in EmailNotificationStatus}
        counts.update({status.value: count for status, count in rows.all()})

        result = await session.execute(
            select(EmailNotificationQueue)
            .order_by(EmailNotificationQueue.created_at.desc())
            .limit(limit)
        )
        entries = list(result.scalars().all())

    recent = []
    for entry in entries:
        conversation = entry.conversation
        item = {
            "id": str(entry.id),
            "status": entry.status.value,
            "message_count": entry.message_count,
            "salon": conversation.salon.display_name if conversation else None,
            "client": conversation.client.display_name if conversation else None,
            "created_at": entry.created_at,
            "sent_at": entry.sent_at,
            "failure_reason": entry.failure_reason,
            "rate_limit_ttl": None,
        }
        if entry.status == EmailNotificationStatus.PENDING:
            item["rate_limit_ttl"] = await email_rate_limiter.get_ttl(
                entry.conversation_id, entry.recipient_user_id
            )
        recent.append(item)

    return {"counts": counts, "recent": recent}


def print_report(report: dict[str, Any]) -> None:
    print("📊 Email queue\n")
    for status, count in report["counts"].items():
        print(f"   {status}: {count}")

    print(f"\n📝 Latest {len(report['recent'])} entries:")
    for item in report["recent"]:
        print(f"\n   ID: {item['id']}")
        print(f"   Status: {item['status']}")
        print(f"   Messages: {item['message_count']}")
        print(f"   Salon: {item['salon'] or 'N/A'}")
        print(f"   Client: {item['client'] or 'N/A'}")
        print(f"   Created: {item['created_at']:%Y-%m-%d %H:%M:%S}")
        if item["sent_at"]:
            print(f"   Sent: {item['sent_at']:%Y-%m-%d %H:%M:%S}")
        if item["failure_reason"]:
            print(f"   Error: {item['failure_reason']}")
        if item["rate_limit_ttl"]:
            print(f"   Rate limit window: {item['rate_limit_ttl']}s left")


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect the email digest queue")
    parser.add_argument("--limit", type=int, default=10, help="Number of recent entries to show")
    args = parser.parse_args()
    print_report(asyncio.run(inspect_email_queue(args.limit)))


if __name__ == "__main__":
    main()
