from __future__ import annotations

import sys
from types import SimpleNamespace

import pytest

from pushqueue.core.config import get_settings
from pushqueue.core.errors import ProviderConfigError
from pushqueue.providers.push import fcm as fcm_module
from pushqueue.providers.push.base import PushMessage
from pushqueue.providers.push.factory import get_push_provider
from pushqueue.providers.push.fake import FakePushProvider


@pytest.mark.asyncio
async def test_fake_provider_follows_script_then_delivers() -> None:
    provider = FakePushProvider([{"t1": "bad token"}, RuntimeError("down")])
    message = PushMessage(title="a", body="b", tokens=("t1", "t2"))
    first = await provider.send_multicast(message)
    assert first.failure_count == 1
    assert first.success_count == 1
    with pytest.raises(RuntimeError):
        await provider.send_multicast(message)
    third = await provider.send_multicast(message)
    assert third.failure_count == 0
    assert len(provider.sent) == 3


def test_factory_none_means_degraded(monkeypatch) -> None:
    monkeypatch.setenv("PUSH_PROVIDER", "none")
    get_settings.cache_clear()
    assert get_push_provider() is None


def test_factory_fake_provider(monkeypatch) -> None:
    monkeypatch.setenv("PUSH_PROVIDER", "fake")
    get_settings.cache_clear()
    assert isinstance(get_push_provider(), FakePushProvider)


def test_factory_fcm_without_credentials_is_degraded(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("PUSH_PROVIDER", "fcm")
    monkeypatch.setenv("FCM_CREDENTIALS_PATH", str(tmp_path / "missing.json"))
    get_settings.cache_clear()
    assert get_push_provider() is None


def test_factory_fcm_with_credentials_file(monkeypatch, tmp_path) -> None:
    creds = tmp_path / "service-account-key.json"
    creds.write_text("{}", encoding="utf-8")
    monkeypatch.setenv("PUSH_PROVIDER", "fcm")
    monkeypatch.setenv("FCM_CREDENTIALS_PATH", str(creds))
    get_settings.cache_clear()
    assert isinstance(get_push_provider(), fcm_module.FcmPushProvider)


def test_factory_rejects_unknown_provider(monkeypatch) -> None:
    monkeypatch.setenv("PUSH_PROVIDER", "pigeon")
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_push_provider()


@pytest.mark.asyncio
async def test_fcm_provider_maps_per_token_responses(monkeypatch) -> None:
    from firebase_admin import messaging

    captured = {}

    def _send_each_for_multicast(multicast, app=None):  # noqa: ANN001
        captured["tokens"] = list(multicast.tokens)
        captured["data"] = dict(multicast.data)
        captured["app"] = app
        return SimpleNamespace(
            responses=[
                SimpleNamespace(success=True, exception=None),
                SimpleNamespace(success=False, exception=Exception("Requested entity was not found.")),
            ]
        )

    monkeypatch.setattr(messaging, "send_each_for_multicast", _send_each_for_multicast)
    provider = fcm_module.FcmPushProvider(credentials_path="unused.json", app_name="test-app")
    sentinel_app = object()
    provider._app = sentinel_app
    result = await provider.send_multicast(
        PushMessage(title="t", body="b", tokens=("ok-token", "stale-token"), data={"jobId": "j1"})
    )
    assert captured == {"tokens": ["ok-token", "stale-token"], "data": {"jobId": "j1"}, "app": sentinel_app}
    assert result.success_count == 1
    assert result.results[1].token == "stale-token"
    assert result.results[1].error == "Requested entity was not found."


def test_fcm_provider_rejects_unreadable_credentials(tmp_path) -> None:
    provider = fcm_module.FcmPushProvider(
        credentials_path=str(tmp_path / "nope.json"),
        app_name=f"missing-{tmp_path.name}",
    )
    with pytest.raises(ProviderConfigError):
        provider._get_app()


@pytest.mark.asyncio
async def test_fcm_provider_without_sdk_raises_config_error(monkeypatch) -> None:
    monkeypatch.setitem(sys.modules, "firebase_admin", None)
    provider = fcm_module.FcmPushProvider(credentials_path="unused.json", app_name="no-sdk")
    with pytest.raises(ProviderConfigError):
        await provider.send_multicast(PushMessage(title="t", body="b", tokens=("t1",)))
