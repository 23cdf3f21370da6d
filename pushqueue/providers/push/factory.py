from __future__ import annotations

import logging
from pathlib import Path

from pushqueue.core.config import get_settings
from pushqueue.core.errors import ProviderConfigError
from pushqueue.providers.push.base import PushProvider
from pushqueue.providers.push.fake import FakePushProvider
from pushqueue.providers.push.fcm import FcmPushProvider

logger = logging.getLogger(__name__)


def get_push_provider() -> PushProvider | None:
    """Resolve the configured push provider.

    Returns ``None`` when push delivery is not configured; callers run in
    degraded mode and never attempt a real send.
    """
    settings = get_settings()
    provider = (settings.push_provider or "none").lower()

    if provider == "none":
        logger.warning("push_provider_disabled")
        return None
    if provider == "fake":
        return FakePushProvider()
    if provider == "fcm":
        path = settings.fcm_credentials_path
        if not path or not Path(path).is_file():
            logger.warning("fcm_credentials_missing path=%s", path)
            return None
        return FcmPushProvider(credentials_path=path, app_name=settings.fcm_app_name)

    raise ProviderConfigError(f"Unsupported push provider: {provider}")
