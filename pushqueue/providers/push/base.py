from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True, slots=True)
class PushMessage:
    title: str
    body: str
    tokens: tuple[str, ...]
    data: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TokenResult:
    token: str
    success: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class PushBatchResult:
    results: tuple[TokenResult, ...]

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.results if item.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for item in self.results if not item.success)


class PushProvider(Protocol):
    async def send_multicast(self, message: PushMessage) -> PushBatchResult:
        ...
