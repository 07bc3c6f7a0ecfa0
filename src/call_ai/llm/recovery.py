"""Error classification and recovery middleware.

Two policies, each applied at most once per call:

  ModelFallbackMiddleware     - provider rejected the model id; replay with
                                the fallback model
  CredentialRefreshMiddleware - credential missing or rejected; refresh the
                                key and replay with the new key
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from call_ai.config import FALLBACK_MODEL
from call_ai.errors import (
    AuthRequiredError,
    CallAIError,
    HttpError,
    InvalidModelError,
    StreamProtocolError,
)

from .key_store import KeyStore, is_new_key_error
from .middleware import CallRequest, NextFn

_logger = logging.getLogger(__name__)

_MODEL_TERMS = re.compile(r"\b(model|engine)", re.I)
_INVALID_TERMS = re.compile(
    r"not found|invalid|unavailable|not a valid|does not exist|no endpoints", re.I,
)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def error_text(body: str) -> str | None:
    """Error text from a JSON error body, or ``None`` if there is none.

    Tries ``{"error": {"message": ...}}``, ``{"error": "..."}`` and
    ``{"message": ...}`` in that order.
    """
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, str):
        return error
    if isinstance(data.get("message"), str):
        return data["message"]
    return None


def is_invalid_model_response(status: int, body: str) -> bool:
    """True for a 4xx whose error text says the model id was not accepted."""
    if not 400 <= status < 500:
        return False
    text = error_text(body) or body
    return bool(_MODEL_TERMS.search(text) and _INVALID_TERMS.search(text))


def _error_message(status: int, body: str, status_text: str | None) -> str:
    message = error_text(body)
    if message is None:
        try:
            json.loads(body)
        except (json.JSONDecodeError, ValueError):
            stripped = body.strip()
            if stripped:
                message = body[:100] + "..." if len(body) > 100 else body
            else:
                message = f"API error: {status} {status_text or ''}".rstrip()
        else:
            message = f"API returned {status}: {status_text or ''}".rstrip()
    if str(status) not in message:
        message = f"{message} (Status: {status})"
    return message


def http_error_for(
    status: int,
    body: str,
    *,
    status_text: str | None = None,
    content_type: str | None = None,
) -> CallAIError:
    """Map a failed response onto the matching ``CallAIError`` subclass."""
    kwargs: dict[str, Any] = dict(
        status=status,
        status_text=status_text,
        details=body,
        content_type=content_type,
    )
    message = _error_message(status, body, status_text)
    if is_invalid_model_response(status, body):
        return InvalidModelError(message, **kwargs)
    if status in (401, 403):
        return AuthRequiredError(message, **kwargs)
    return HttpError(message, **kwargs)


# ---------------------------------------------------------------------------
# Recovery middleware
# ---------------------------------------------------------------------------

@dataclass
class ModelFallbackMiddleware:
    """Replay once with *fallback_model* when the model id is rejected.

    Skipped when ``options.skip_retry`` is set or the call has already fallen
    back.  Once it has, later replays of the call (for example after a key
    refresh) go straight to the fallback model.  A second rejection
    propagates to the caller.
    """

    fallback_model: str = FALLBACK_MODEL

    async def process(self, request: CallRequest, next_fn: NextFn) -> Any:
        if request.fallback_model and request.options.model != request.fallback_model:
            request = _with_model(request, request.fallback_model)
        try:
            return await next_fn(request)
        except InvalidModelError as e:
            if request.options.skip_retry or request.fallback_used:
                raise
            _logger.warning(
                "Model %s rejected (%s), retrying with %s",
                request.options.model, e, self.fallback_model,
            )
            request.state["fallback_model"] = self.fallback_model
            return await next_fn(_with_model(request, self.fallback_model))


def _with_model(request: CallRequest, model: str) -> CallRequest:
    return dataclasses.replace(request, options=dataclasses.replace(request.options, model=model))


@dataclass
class CredentialRefreshMiddleware:
    """Refresh the API key and replay once on credential errors.

    When the refresh fails for any reason or yields no key, the original
    error propagates unchanged.  In-band stream errors and invalid-model
    errors are never treated as credential problems.
    """

    key_store: KeyStore

    async def process(self, request: CallRequest, next_fn: NextFn) -> Any:
        try:
            return await next_fn(request)
        except (StreamProtocolError, InvalidModelError):
            raise
        except CallAIError as e:
            if request.options.skip_refresh or request.key_refreshed:
                raise
            if not (isinstance(e, AuthRequiredError) or is_new_key_error(e)):
                raise
            _logger.info("Credential error (%s), refreshing API key", e)
            request.state["key_refreshed"] = True
            try:
                new_key = await self.key_store.refresh()
            except Exception as refresh_error:
                _logger.warning("Key refresh failed: %s", refresh_error)
                raise e from refresh_error
            if not new_key:
                raise
            return await next_fn(dataclasses.replace(request, api_key=new_key))
