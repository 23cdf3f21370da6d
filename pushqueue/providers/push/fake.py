from __future__ import annotations

from collections import deque
from typing import Iterable

from pushqueue.providers.push.base import PushBatchResult, PushMessage, TokenResult


class FakePushProvider:
    """In-memory provider for tests and local runs.

    Every message is recorded. Scripted steps are consumed in order: an
    exception is raised, a mapping of ``token -> error`` fails those tokens,
    and ``None`` delivers everything. Once the script is exhausted every token
    is delivered.
    """

    def __init__(self, script: Iterable[Exception | dict[str, str] | None] | None = None) -> None:
        self.sent: list[PushMessage] = []
        self._script: deque[Exception | dict[str, str] | None] = deque(script or [])

    async def send_multicast(self, message: PushMessage) -> PushBatchResult:
        self.sent.append(message)
        step = self._script.popleft() if self._script else None
        if isinstance(step, Exception):
            raise step
        failures = step or {}
        return PushBatchResult(
            results=tuple(
                TokenResult(token=token, success=token not in failures, error=failures.get(token))
                for token in message.tokens
            )
        )
