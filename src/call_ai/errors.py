"""Structured error types for call-ai.

Callers can catch specific error types instead of inspecting raw HTTP
responses::

    from call_ai.errors import AuthRequiredError, StreamProtocolError

    try:
        text = await client.call("hello", CallOptions(model="openai/gpt-4o"))
    except AuthRequiredError:
        # Key refresh was attempted and failed
        ...

Transport failures are never wrapped: they surface as the original
``httpx.TransportError`` (exported here as ``NetworkError``).
"""

from __future__ import annotations

from typing import Any

import httpx

# Transport failures propagate verbatim from httpx.
NetworkError = httpx.TransportError


class CallAIError(Exception):
    """Base for all call-ai errors.  Carries the HTTP status when known."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        status_text: str | None = None,
        details: Any = None,
        content_type: str | None = None,
        original: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.status_text = status_text
        self.details = details
        self.content_type = content_type
        self.original = original

    def __str__(self) -> str:
        return self.message


class HttpError(CallAIError):
    """Non-2xx response, or a 2xx response carrying an error body."""


class InvalidModelError(HttpError):
    """The provider rejected the model id.  Triggers the fallback model."""


class AuthRequiredError(CallAIError):
    """Missing or rejected credential.  Triggers key refresh."""


class StreamProtocolError(CallAIError):
    """In-band error frame inside an otherwise successful stream."""


class MalformedPayloadError(CallAIError):
    """A response body that could not be parsed or had no usable content."""


class KeyRefreshError(CallAIError):
    """The key-management service failed to issue a new key."""
