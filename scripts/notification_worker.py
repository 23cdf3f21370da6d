from __future__ import annotations

import asyncio

from pushqueue.core.logging import configure_logging
from pushqueue.services.delivery.worker import run_notification_delivery_loop


async def _main() -> None:
    # Boot a dedicated delivery loop; run several processes to scale out, claims never overlap.
    configure_logging()
    await run_notification_delivery_loop()


if __name__ == "__main__":
    asyncio.run(_main())
