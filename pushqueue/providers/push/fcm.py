from __future__ import annotations

import asyncio
import logging
from typing import Any

from pushqueue.core.config import get_settings
from pushqueue.core.errors import ProviderConfigError, PushTransportError
from pushqueue.providers.push.base import PushBatchResult, PushMessage, TokenResult

logger = logging.getLogger(__name__)


class FcmPushProvider:
    def __init__(self, credentials_path: str, app_name: str | None = None) -> None:
        self._credentials_path = credentials_path
        self._app_name = app_name or get_settings().fcm_app_name
        self._app: Any | None = None

    def _get_app(self) -> Any:
        if self._app is not None:
            return self._app
        try:
            import firebase_admin
            from firebase_admin import credentials
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError("Firebase Admin SDK not available. Install firebase-admin.") from exc

        # Reuse a named app so several providers in one process share a single initialization.
        try:
            self._app = firebase_admin.get_app(self._app_name)
        except ValueError:
            try:
                cert = credentials.Certificate(self._credentials_path)
            except (OSError, ValueError) as exc:
                raise ProviderConfigError(
                    f"Could not load FCM service account from {self._credentials_path}"
                ) from exc
            self._app = firebase_admin.initialize_app(cert, name=self._app_name)
            logger.info("fcm_app_initialized app=%s", self._app_name)
        return self._app

    def _send_blocking(self, message: PushMessage) -> PushBatchResult:
        # Resolve the app first so a missing SDK surfaces as ProviderConfigError.
        app = self._get_app()
        from firebase_admin import exceptions as firebase_exceptions
        from firebase_admin import messaging

        multicast = messaging.MulticastMessage(
            tokens=list(message.tokens),
            notification=messaging.Notification(title=message.title, body=message.body),
            data=dict(message.data),
        )
        try:
            response = messaging.send_each_for_multicast(multicast, app=app)
        except (firebase_exceptions.FirebaseError, ValueError) as exc:
            raise PushTransportError(f"FCM multicast failed: {exc}") from exc
        results = []
        for token, item in zip(message.tokens, response.responses):
            error = None if item.success else str(getattr(item.exception, "message", None) or item.exception)
            results.append(TokenResult(token=token, success=bool(item.success), error=error))
        return PushBatchResult(results=tuple(results))

    async def send_multicast(self, message: PushMessage) -> PushBatchResult:
        # The SDK is blocking; keep the event loop free while the batch is in flight.
        return await asyncio.to_thread(self._send_blocking, message)
