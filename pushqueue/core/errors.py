from __future__ import annotations


class PushQueueError(Exception):
    """Base error for pushqueue."""


class ProviderConfigError(PushQueueError):
    """Missing or invalid push provider configuration."""


class PushTransportError(PushQueueError):
    """Push provider request failure (network, auth, malformed request)."""
