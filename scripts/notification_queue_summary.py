from __future__ import annotations

import asyncio

from pushqueue.persistence.db import SessionLocal
from pushqueue.persistence.repos.jobs import job_status_counts


async def summarize() -> None:
    # Print job counts per status so operators can spot backlogs and terminal failures.
    async with SessionLocal() as session:
        counts = await job_status_counts(session)
    print(" ".join(f"{status}={count}" for status, count in counts.items()))


if __name__ == "__main__":
    asyncio.run(summarize())
