from __future__ import annotations

from typing import Any

import httpx


class RelayError(Exception):
    """Base class for gateway failures that map onto a stable client error code."""

    code: str = "internal_error"
    error_type: str = "relay_error"


class TransformError(RelayError, ValueError):
    """Raised when a canonical request cannot be reshaped for a vendor."""

    code = "request_transform_failed"
    error_type = "transform_error"

    def __init__(self, message: str, *, field: str | None = None, provider: str | None = None) -> None:
        super().__init__(message)
        self.field = field
        self.provider = provider

    def detail(self) -> str:
        parts = [str(self)]
        if self.field:
            parts.append(f"field={self.field}")
        if self.provider:
            parts.append(f"provider={self.provider}")
        return " | ".join(parts)


class CredentialUnavailable(RelayError):
    code = "credential_unavailable"
    error_type = "authentication_error"


class DispatchNetworkError(RelayError):
    """Transport-level failure reaching the upstream. Never retried."""

    code = "upstream_unreachable"
    error_type = "network_error"

    def __init__(self, message: str, *, url: str, attempts: int) -> None:
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class DispatchQuotaOrAuthExhausted(RelayError):
    """Every credential in the current cycle was rejected with a quota/auth status.

    ``response`` is the last upstream response; its body has been buffered but
    not altered, so it can still be relayed to the client verbatim.
    """

    code = "credentials_exhausted"
    error_type = "upstream_error"

    def __init__(self, response: httpx.Response, *, attempts: int) -> None:
        super().__init__(f"upstream rejected all credentials with status {response.status_code}")
        self.response = response
        self.attempts = attempts

    @property
    def status_code(self) -> int:
        return self.response.status_code


class StreamTransformError(RelayError):
    code = "stream_transform_failed"
    error_type = "stream_error"

    def __init__(self, message: str, *, event_type: str | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.event_type = event_type
        self.payload = payload


class NormalizationError(RelayError, ValueError):
    code = "response_normalization_failed"
    error_type = "normalization_error"


__all__ = [
    "RelayError",
    "TransformError",
    "CredentialUnavailable",
    "DispatchNetworkError",
    "DispatchQuotaOrAuthExhausted",
    "StreamTransformError",
    "NormalizationError",
]
