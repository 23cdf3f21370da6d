from __future__ import annotations

import argparse
import asyncio
import json
import sys

from pushqueue.persistence.db import SessionLocal
from pushqueue.persistence.repos.jobs import enqueue_notification


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Queue a push notification for a user")
    parser.add_argument("user_id", help="Owning user id")
    parser.add_argument("title")
    parser.add_argument("body")
    parser.add_argument("--metadata", default=None, help="JSON object stored with the notification")
    return parser


async def _enqueue(user_id: str, title: str, body: str, metadata: dict | None) -> int:
    async with SessionLocal() as session:
        notification, job = await enqueue_notification(
            session,
            user_id=user_id,
            title=title,
            body=body,
            metadata=metadata,
        )
    print(f"notification_id={notification.id} job_id={job.id}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    metadata = json.loads(args.metadata) if args.metadata else None
    if metadata is not None and not isinstance(metadata, dict):
        print("--metadata must be a JSON object", file=sys.stderr)
        return 2
    return asyncio.run(_enqueue(args.user_id, args.title, args.body, metadata))


if __name__ == "__main__":
    sys.exit(main())
