from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union


@dataclass(frozen=True, slots=True)
class ClaimedJob:
    # Snapshot of a claimed job joined with its notification and owning user.
    id: str
    notification_id: str
    user_id: str
    title: str
    body: str
    metadata: dict[str, Any] = field(default_factory=dict)
    retries: int = 0
    processing_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class AllDelivered:
    delivered: int = 0


@dataclass(frozen=True, slots=True)
class PartialFailure:
    errors: tuple[str, ...]
    delivered: int = 0

    @property
    def reason(self) -> str:
        return "; ".join(self.errors)


@dataclass(frozen=True, slots=True)
class NoTargets:
    pass


@dataclass(frozen=True, slots=True)
class TransportError:
    error: str

    @property
    def reason(self) -> str:
        return self.error


Outcome = Union[AllDelivered, PartialFailure, NoTargets, TransportError]


def outcome_name(outcome: Outcome) -> str:
    # Stable snake_case labels for logs and cycle summaries.
    if isinstance(outcome, AllDelivered):
        return "all_delivered"
    if isinstance(outcome, PartialFailure):
        return "partial_failure"
    if isinstance(outcome, NoTargets):
        return "no_targets"
    return "transport_error"
