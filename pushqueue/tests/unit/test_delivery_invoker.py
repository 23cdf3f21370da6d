from __future__ import annotations

import pytest

from pushqueue.core.errors import PushTransportError
from pushqueue.domain.outcomes import AllDelivered, ClaimedJob, NoTargets, PartialFailure, TransportError
from pushqueue.providers.push.base import PushBatchResult, PushMessage, TokenResult
from pushqueue.providers.push.fake import FakePushProvider
from pushqueue.services.delivery.invoker import MISSING_RESULT_ERROR, DeliveryInvoker, build_message_data


def _job(**overrides) -> ClaimedJob:
    values = {
        "id": "job-1",
        "notification_id": "notif-1",
        "user_id": "user-1",
        "title": "Hello",
        "body": "World",
        "metadata": {},
    }
    values.update(overrides)
    return ClaimedJob(**values)


class _ShortResponseProvider:
    # Answers only for the first token of every batch.
    async def send_multicast(self, message: PushMessage) -> PushBatchResult:
        return PushBatchResult(results=(TokenResult(token=message.tokens[0], success=True),))


@pytest.mark.asyncio
async def test_empty_targets_never_contact_provider() -> None:
    provider = FakePushProvider()
    outcome = await DeliveryInvoker(provider).send(_job(), [])
    assert outcome == NoTargets()
    assert provider.sent == []


@pytest.mark.asyncio
async def test_all_targets_are_sent_in_one_batch() -> None:
    provider = FakePushProvider()
    outcome = await DeliveryInvoker(provider).send(_job(), ["t1", "t2", "t3"])
    assert outcome == AllDelivered(delivered=3)
    assert len(provider.sent) == 1
    message = provider.sent[0]
    assert message.tokens == ("t1", "t2", "t3")
    assert message.title == "Hello"
    assert message.body == "World"


@pytest.mark.asyncio
async def test_per_token_failures_become_partial_failure() -> None:
    provider = FakePushProvider([{"t2": "Requested entity was not found."}])
    outcome = await DeliveryInvoker(provider).send(_job(), ["t1", "t2"])
    assert isinstance(outcome, PartialFailure)
    assert outcome.delivered == 1
    assert outcome.errors == ("Token t2: Requested entity was not found.",)
    assert outcome.reason == "Token t2: Requested entity was not found."


@pytest.mark.asyncio
async def test_multiple_failures_join_reasons() -> None:
    provider = FakePushProvider([{"t1": "unregistered", "t2": "invalid"}])
    outcome = await DeliveryInvoker(provider).send(_job(), ["t1", "t2"])
    assert isinstance(outcome, PartialFailure)
    assert outcome.reason == "Token t1: unregistered; Token t2: invalid"


@pytest.mark.asyncio
async def test_provider_exception_becomes_transport_error() -> None:
    provider = FakePushProvider([PushTransportError("auth token expired")])
    outcome = await DeliveryInvoker(provider).send(_job(), ["t1"])
    assert outcome == TransportError(error="auth token expired")


@pytest.mark.asyncio
async def test_tokens_missing_from_response_count_as_failures() -> None:
    outcome = await DeliveryInvoker(_ShortResponseProvider()).send(_job(), ["t1", "t2", "t3"])
    assert isinstance(outcome, PartialFailure)
    assert outcome.delivered == 1
    assert outcome.errors == (
        f"Token t2: {MISSING_RESULT_ERROR}",
        f"Token t3: {MISSING_RESULT_ERROR}",
    )


def test_message_data_is_flattened_to_strings() -> None:
    data = build_message_data(
        _job(metadata={"videoId": "abc", "episode": 3, "live": True, "tags": ["a"], "skip": None})
    )
    assert data == {
        "videoId": "abc",
        "episode": "3",
        "live": "true",
        "tags": "[\"a\"]",
        "notificationId": "notif-1",
        "jobId": "job-1",
        "type": "general",
    }


def test_message_data_keeps_explicit_type() -> None:
    data = build_message_data(_job(metadata={"type": "new_video"}))
    assert data["type"] == "new_video"
