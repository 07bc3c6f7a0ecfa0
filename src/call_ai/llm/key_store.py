"""API key storage and refresh.

``KeyStore`` is the only state shared between calls.  It holds the most
recently issued key and coalesces concurrent refresh requests onto a single
in-flight future, so a burst of 401s triggers one round-trip to the
key-management service.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Awaitable, Callable, Union

import httpx
from pydantic import BaseModel, ValidationError

from call_ai.config import DEFAULT_REFRESH_ENDPOINT, DEFAULT_REFRESH_TOKEN, CallAIConfig
from call_ai.errors import KeyRefreshError

from .request_builder import join_url_parts

_logger = logging.getLogger(__name__)

_STATUS_IN_MESSAGE = re.compile(r"status:\s*(\d+)", re.I)

# Terms that suggest a 4xx was caused by the credential rather than the request.
_AUTH_TERMS = ("unauthorized", "forbidden", "authentication", "api key", "apikey", "auth")
_INVALID_KEY_TERMS = (
    "invalid api key", "invalid key", "incorrect api key", "incorrect key",
    "authentication failed", "not authorized",
)
_RATE_LIMIT_TERMS = ("rate limit", "too many requests", "quota", "exceed")
_BILLING_TERMS = ("billing", "payment", "subscription", "account")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class KeyMetadata(BaseModel):
    """Details the key-management service reports for an issued key."""

    key: str
    hash: str | None = None
    created: datetime | None = None
    expires: datetime | None = None
    remaining: float | None = None
    limit: float | None = None


class KeyRefreshResponse(BaseModel):
    """Body of a successful ``/api/keys`` response.

    ``key`` is either the bare key string or an object with the key and its
    metadata.
    """

    key: Union[str, KeyMetadata]
    hash: str | None = None
    metadata: dict[str, Any] | None = None

    def to_metadata(self) -> KeyMetadata:
        if isinstance(self.key, KeyMetadata):
            return self.key
        extra = self.metadata or {}
        return KeyMetadata(key=self.key, hash=self.hash, **{
            k: v for k, v in extra.items() if k in ("created", "expires", "remaining", "limit")
        })


# Async callable: current key in, new key (or its metadata) out.
Refresher = Callable[[Union[str, None]], Awaitable[Union[KeyMetadata, str, None]]]


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def is_new_key_error(error: BaseException) -> bool:
    """Heuristic: does *error* suggest the API key must be replaced?

    True for a 4xx status combined with auth, invalid-key, rate-limit or
    billing phrasing.  An unknown status counts as 4xx (450), so message
    phrasing alone is enough when no status is attached.
    """
    message = str(error).lower()
    status = getattr(error, "status", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    if status is None:
        match = _STATUS_IN_MESSAGE.search(message)
        status = int(match.group(1)) if match else 450

    if not 400 <= status < 500:
        return False

    needs_new_key = (
        status in (401, 403, 429)
        or any(term in message for term in _AUTH_TERMS)
        or any(term in message for term in _INVALID_KEY_TERMS)
        or ("openai" in message and ("api key" in message or "authentication" in message))
        or any(term in message for term in _RATE_LIMIT_TERMS)
        or any(term in message for term in _BILLING_TERMS)
    )
    if needs_new_key:
        _logger.debug("Detected error requiring key refresh: %s", message)
    return needs_new_key


# ---------------------------------------------------------------------------
# HTTP refresher
# ---------------------------------------------------------------------------

class HttpKeyRefresher:
    """Obtain a fresh key from the key-management service.

    POSTs to ``<endpoint>/api/keys`` with the refresh token as a bearer
    credential.  When the service rejects the refresh token (401) and an
    ``update_refresh_token`` callback is configured, a new refresh token is
    requested from the callback and the POST is retried once.

    *key_hash* maps the current key to the hash the service issued with it;
    when known, the hash is sent so the service can retire the old key.
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_REFRESH_ENDPOINT,
        refresh_token: str | None = DEFAULT_REFRESH_TOKEN,
        *,
        http_client: httpx.AsyncClient | None = None,
        update_refresh_token: Callable[[str | None], Awaitable[str]] | None = None,
        key_hash: Callable[[str | None], str | None] | None = None,
        timeout: float = 30,
    ) -> None:
        self.endpoint = endpoint
        self.refresh_token = refresh_token
        self._update_refresh_token = update_refresh_token
        self._key_hash = key_hash
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def __call__(self, current_key: str | None) -> KeyMetadata:
        resp = await self._post(current_key)
        if resp.status_code == 401 and self._update_refresh_token is not None:
            _logger.info("Refresh token rejected, requesting a new one")
            self.refresh_token = await self._update_refresh_token(self.refresh_token)
            resp = await self._post(current_key)

        if resp.is_error:
            raise KeyRefreshError(
                f"API key refresh failed: {resp.status_code} {resp.text[:100]}",
                status=resp.status_code,
                status_text=resp.reason_phrase,
                details=resp.text,
                content_type=resp.headers.get("content-type"),
            )
        try:
            parsed = KeyRefreshResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise KeyRefreshError(
                f"Invalid key refresh response: {e}",
                status=resp.status_code,
                details=resp.text,
                original=e,
            ) from e

        return parsed.to_metadata()

    async def _post(self, current_key: str | None) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self.refresh_token:
            headers["Authorization"] = f"Bearer {self.refresh_token}"
        body: dict[str, Any] = {}
        key_hash = self._key_hash(current_key) if self._key_hash is not None else None
        if key_hash:
            body["hash"] = key_hash
        url = join_url_parts(self.endpoint, "/api/keys")
        _logger.debug("POST %s", url)
        return await self._client.post(url, json=body, headers=headers)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Key store
# ---------------------------------------------------------------------------

class KeyStore:
    """Current API key plus a coalescing refresh operation.

    Usage::

        store = KeyStore.from_config(config)
        key = store.current
        new_key = await store.refresh()   # concurrent callers share one refresh
    """

    def __init__(
        self,
        current: str | None = None,
        refresher: Refresher | None = None,
    ) -> None:
        self._current = current
        self._refresher = refresher
        self._inflight: asyncio.Future[str | None] | None = None
        self.metadata: dict[str, KeyMetadata] = {}

    @classmethod
    def from_config(
        cls,
        config: CallAIConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        update_refresh_token: Callable[[str | None], Awaitable[str]] | None = None,
    ) -> KeyStore:
        store = cls()
        store._refresher = HttpKeyRefresher(
            config.refresh_endpoint,
            config.refresh_token,
            http_client=http_client,
            update_refresh_token=update_refresh_token,
            key_hash=store.get_hash_from_key,
        )
        return store

    @property
    def current(self) -> str | None:
        return self._current

    @current.setter
    def current(self, key: str | None) -> None:
        self._current = key

    def current_key(self) -> str | None:
        return self._current

    @property
    def can_refresh(self) -> bool:
        return self._refresher is not None

    @property
    def is_refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def refresh(self) -> str | None:
        """Replace the current key.  Returns the new key, or ``None``.

        Concurrent callers await the same in-flight refresh.  Cancelling one
        caller does not cancel the refresh for the others.
        """
        if self._refresher is None:
            return None
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._do_refresh())
            self._inflight.add_done_callback(self._clear_inflight)
        else:
            _logger.debug("Joining in-flight key refresh")
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, future: asyncio.Future[str | None]) -> None:
        if self._inflight is future:
            self._inflight = None

    async def _do_refresh(self) -> str | None:
        refresher = self._refresher
        if refresher is None:
            return None
        _logger.info("Refreshing API key")
        result = await refresher(self._current)

        if isinstance(result, KeyMetadata):
            self.store_key_metadata(result)
            key = result.key
        else:
            key = result
        if key:
            self._current = key
            _logger.info("API key refreshed")
        else:
            _logger.warning("Key refresh returned no key")
        return key or None

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def store_key_metadata(self, data: KeyMetadata) -> None:
        if not data.key:
            return
        if data.created is None:
            data = data.model_copy(update={"created": datetime.now()})
        self.metadata[data.key] = data

    def get_hash_from_key(self, key: str | None) -> str | None:
        if not key:
            return None
        entry = self.metadata.get(key)
        return entry.hash if entry is not None else None

    async def aclose(self) -> None:
        close = getattr(self._refresher, "aclose", None)
        if close is not None:
            await close()
