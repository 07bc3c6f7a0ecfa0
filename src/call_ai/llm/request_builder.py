"""Build the HTTP request for one chat-completion call."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from call_ai.config import CallAIConfig
from call_ai.errors import AuthRequiredError
from call_ai.types import CallOptions

from .strategies import SchemaStrategy, to_json

if TYPE_CHECKING:
    from .key_store import KeyStore

_logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/api/v1/chat/completions"


@dataclass
class ChatRequest:
    """Everything needed to send one request.  ``body`` is JSON-ready."""

    url: str
    headers: httpx.Headers
    body: dict[str, Any]
    api_key: str
    method: str = "POST"
    stream: bool = False


def join_url_parts(base: str, path: str) -> str:
    """Join *base* and *path* with exactly one slash between them."""
    if not base:
        return path
    if not path:
        return base
    return str(httpx.URL(base.rstrip("/") + "/").join(path.lstrip("/")))


def resolve_api_key(
    options: CallOptions,
    config: CallAIConfig,
    key_store: KeyStore | None = None,
    override: str | None = None,
) -> str:
    """First of: refreshed key, option, key store, configured key, proxy placeholder."""
    candidates = (
        override,
        options.api_key,
        key_store.current if key_store is not None else None,
        config.api_key,
        config.proxy_managed_key,
    )
    for key in candidates:
        if key:
            return key
    raise AuthRequiredError(
        "API key is required. Provide it via options.api_key, the key store, "
        "or the CALLAI_API_KEY environment variable",
        status=401,
    )


def resolve_endpoint(options: CallOptions, config: CallAIConfig) -> str:
    if options.endpoint:
        return options.endpoint
    if config.endpoint:
        return config.endpoint
    return join_url_parts(options.chat_url or config.chat_url, CHAT_COMPLETIONS_PATH)


def build_request(
    messages: list[dict[str, Any]],
    strategy: SchemaStrategy,
    options: CallOptions,
    *,
    config: CallAIConfig,
    key_store: KeyStore | None = None,
    api_key: str | None = None,
    stream: bool | None = None,
) -> ChatRequest:
    """Assemble URL, headers and body for *messages*.

    ``stream`` overrides ``options.stream`` (used when a strategy forces
    streaming).  ``api_key`` overrides every other key source.
    """
    key = resolve_api_key(options, config, key_store, api_key)
    url = resolve_endpoint(options, config)
    stream = options.stream if stream is None else stream

    body: dict[str, Any] = {
        "model": strategy.model,
        "messages": messages,
        "stream": stream,
    }
    if options.temperature is not None:
        body["temperature"] = options.temperature
    if options.top_p is not None:
        body["top_p"] = options.top_p
    if options.max_tokens is not None:
        body["max_tokens"] = options.max_tokens
    if options.stop:
        body["stop"] = [options.stop] if isinstance(options.stop, str) else list(options.stop)
    if options.response_format == "json":
        body["response_format"] = {"type": "json_object"}
    elif isinstance(options.response_format, dict):
        body["response_format"] = options.response_format

    schema = options.resolved_schema
    if schema is not None:
        body.update(strategy.prepare_request(schema, messages))

    body.update(config.extra_params)
    body.update(options.extra_params)

    headers = httpx.Headers({
        "Authorization": f"Bearer {key}",
        "Content-Type": "application/json",
        "HTTP-Referer": options.referer or config.referer,
        "X-Title": options.title or config.title,
    })
    for name, value in options.headers.items():
        headers[name] = value

    _logger.debug("Endpoint: %s", url)
    _logger.debug("Model: %s (strategy=%s)", strategy.model, strategy.kind.value)
    _logger.debug("Payload: %s", to_json(body))

    return ChatRequest(url=url, headers=headers, body=body, api_key=key, stream=stream)
