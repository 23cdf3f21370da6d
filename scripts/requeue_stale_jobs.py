from __future__ import annotations

import argparse
import asyncio
import sys

from pushqueue.core.config import get_settings
from pushqueue.core.logging import configure_logging
from pushqueue.persistence.db import SessionLocal
from pushqueue.services.delivery.worker import reconcile_stale_jobs


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Requeue notification jobs stuck in processing")
    parser.add_argument(
        "--lease-seconds",
        type=int,
        default=settings.notify_processing_lease_s,
        help="Treat jobs processing longer than this as abandoned",
    )
    parser.add_argument("--limit", type=int, default=settings.notify_reconcile_batch_size)
    return parser


async def _reconcile(lease_s: int, limit: int) -> int:
    settings = get_settings()
    summary = await reconcile_stale_jobs(
        SessionLocal,
        lease_s=lease_s,
        max_retries=settings.notify_max_retries,
        limit=limit,
    )
    print(
        f"stale_jobs={summary['stale']} requeued={summary['requeued']} failed={summary['failed']}"
    )
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    return asyncio.run(_reconcile(args.lease_seconds, args.limit))


if __name__ == "__main__":
    sys.exit(main())
