from __future__ import annotations

import json
import logging
from collections import Counter
from typing import Any, Sequence

from pushqueue.domain.outcomes import (
    AllDelivered,
    ClaimedJob,
    NoTargets,
    Outcome,
    PartialFailure,
    TransportError,
)
from pushqueue.providers.push.base import PushMessage, PushProvider

logger = logging.getLogger(__name__)

MISSING_RESULT_ERROR = "no result returned by provider"


def build_message_data(job: ClaimedJob) -> dict[str, str]:
    # Push data payloads only carry string values, so flatten metadata before adding routing keys.
    data: dict[str, str] = {}
    for key, value in (job.metadata or {}).items():
        if value is None:
            continue
        data[str(key)] = value if isinstance(value, str) else _stringify(value)
    data["notificationId"] = job.notification_id
    data["jobId"] = job.id
    data.setdefault("type", "general")
    return data


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return str(value)


class DeliveryInvoker:
    def __init__(self, provider: PushProvider) -> None:
        self._provider = provider

    async def send(self, job: ClaimedJob, targets: Sequence[str]) -> Outcome:
        tokens = tuple(targets)
        if not tokens:
            return NoTargets()
        message = PushMessage(
            title=job.title,
            body=job.body,
            tokens=tokens,
            data=build_message_data(job),
        )
        try:
            response = await self._provider.send_multicast(message)
        except Exception as exc:  # noqa: BLE001 - every provider fault becomes a retryable outcome.
            logger.warning("push_send_failed job_id=%s error=%s", job.id, exc)
            return TransportError(error=str(exc) or exc.__class__.__name__)

        errors = [
            f"Token {item.token}: {item.error or 'unknown error'}" for item in response.results if not item.success
        ]
        # A token the provider did not answer for was not delivered.
        missing = Counter(tokens) - Counter(item.token for item in response.results)
        errors.extend(f"Token {token}: {MISSING_RESULT_ERROR}" for token in missing.elements())
        if errors:
            return PartialFailure(errors=tuple(errors), delivered=response.success_count)
        return AllDelivered(delivered=response.success_count)
