"""Async chat-completion client with structured-output support.

``AsyncCallAIClient`` owns one ``httpx.AsyncClient`` and one ``KeyStore``.
Each call runs through a middleware pipeline (credential refresh outermost,
then model fallback) around ``_send``, which issues exactly one HTTP
request.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

import httpx

from call_ai.config import CallAIConfig, env_overrides
from call_ai.metadata import ResponseText, attach_meta, now_ms
from call_ai.types import CallOptions, ResponseMeta, Timing, normalize_messages

from .extractor import extract_response, read_response_body
from .key_store import KeyStore
from .middleware import CallRequest, MiddlewarePipeline
from .recovery import CredentialRefreshMiddleware, ModelFallbackMiddleware, http_error_for
from .request_builder import ChatRequest, build_request
from .strategies import SchemaStrategy, choose_schema_strategy
from .stream_consumer import ChatStream, StreamConsumer

_logger = logging.getLogger(__name__)

_OPTION_FIELDS = {f.name for f in dataclasses.fields(CallOptions)}


def make_options(options: CallOptions | None = None, **overrides: Any) -> CallOptions:
    """Return *options* (or defaults) with keyword *overrides* applied.

    Unknown keywords are passed through to the request body via
    ``extra_params``.
    """
    base = options if options is not None else CallOptions()
    known = {k: v for k, v in overrides.items() if k in _OPTION_FIELDS}
    extra = {k: v for k, v in overrides.items() if k not in _OPTION_FIELDS}
    if extra:
        known["extra_params"] = {**base.extra_params, **known.get("extra_params", {}), **extra}
    return dataclasses.replace(base, **known)


class AsyncCallAIClient:
    """Async client for OpenAI-compatible chat-completion APIs.

    Usage::

        async with AsyncCallAIClient() as client:
            text = await client.call("Tell me a joke")
            async with await client.stream("Tell me a story") as stream:
                async for partial in stream:
                    print(partial)
    """

    def __init__(
        self,
        config: CallAIConfig | None = None,
        key_store: KeyStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config if config is not None else CallAIConfig.model_validate(env_overrides())
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout, connect=30),
        )
        self.key_store = key_store or KeyStore.from_config(self.config, http_client=self._http)

        self.pipeline = MiddlewarePipeline(self._send)
        self.pipeline.use(CredentialRefreshMiddleware(self.key_store))
        self.pipeline.use(ModelFallbackMiddleware(self.config.fallback_model))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def call(
        self,
        prompt: str | list[dict[str, Any]],
        options: CallOptions | None = None,
        **overrides: Any,
    ) -> ResponseText:
        """Complete *prompt* and return the whole answer.

        Models whose strategy forces streaming are streamed internally and
        the final text is returned.
        """
        opts = make_options(options, **overrides)
        request = CallRequest(normalize_messages(prompt), dataclasses.replace(opts, stream=False))
        return await self.pipeline.execute(request)

    async def stream(
        self,
        prompt: str | list[dict[str, Any]],
        options: CallOptions | None = None,
        **overrides: Any,
    ) -> ChatStream:
        """Start a streaming completion.

        HTTP-level failures (including invalid model and rejected key) are
        raised here, before any value is produced.  In-band stream errors
        are raised while iterating.
        """
        opts = make_options(options, **overrides)
        request = CallRequest(normalize_messages(prompt), dataclasses.replace(opts, stream=True))
        return await self.pipeline.execute(request)

    async def close(self) -> None:
        """Close the underlying HTTP client if this client created it."""
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> AsyncCallAIClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Core call (innermost pipeline stage)
    # ------------------------------------------------------------------

    async def _send(self, request: CallRequest) -> ResponseText | ChatStream:
        options = request.options
        strategy = choose_schema_strategy(options.model, options.resolved_schema)
        streaming = options.stream or strategy.should_force_stream
        chat = build_request(
            request.messages,
            strategy,
            options,
            config=self.config,
            key_store=self.key_store,
            api_key=request.api_key,
            stream=streaming,
        )

        if not streaming:
            allow_fallback = not (options.skip_retry or request.fallback_used)
            return await self._complete(chat, strategy, allow_fallback)

        stream = await self._open_stream(chat, strategy)
        if options.stream:
            return stream
        _logger.debug("Model %s forces streaming, buffering the result", strategy.model)
        async with stream:
            text = await stream.collect()
        return text if text is not None else ResponseText("")

    async def _complete(
        self, chat: ChatRequest, strategy: SchemaStrategy, allow_fallback: bool,
    ) -> ResponseText:
        start = now_ms()
        resp = await self._http.request(
            chat.method, chat.url, headers=chat.headers, json=chat.body,
        )
        if resp.is_error:
            _logger.warning("Chat request failed with %d", resp.status_code)
            raise http_error_for(
                resp.status_code,
                resp.text,
                status_text=resp.reason_phrase,
                content_type=resp.headers.get("content-type"),
            )

        result = read_response_body(resp, strategy.model)
        text = extract_response(result, strategy, allow_fallback=allow_fallback)
        end = now_ms()
        meta = ResponseMeta(
            model=strategy.model,
            endpoint=chat.url,
            timing=Timing(start_time=start, end_time=end, duration=end - start),
            raw_response=result,
        )
        return attach_meta(text, meta)

    async def _open_stream(self, chat: ChatRequest, strategy: SchemaStrategy) -> ChatStream:
        consumer = StreamConsumer(strategy, endpoint=chat.url)
        http_request = self._http.build_request(
            chat.method, chat.url, headers=chat.headers, json=chat.body,
        )
        resp = await self._http.send(http_request, stream=True)

        content_type = resp.headers.get("content-type", "")
        # A JSON body on a streaming request is an error envelope, whatever the status.
        if resp.is_error or "application/json" in content_type:
            try:
                body = (await resp.aread()).decode("utf-8", errors="replace")
            finally:
                await resp.aclose()
            _logger.warning(
                "Stream request failed: status=%d content-type=%s",
                resp.status_code, content_type,
            )
            raise http_error_for(
                resp.status_code,
                body,
                status_text=resp.reason_phrase,
                content_type=content_type,
            )
        return ChatStream(resp, consumer)


# ---------------------------------------------------------------------------
# Module-level convenience
# ---------------------------------------------------------------------------

async def call_ai(
    prompt: str | list[dict[str, Any]],
    *,
    config: CallAIConfig | None = None,
    key_store: KeyStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    **options: Any,
) -> ResponseText | ChatStream:
    """One-shot call.  Returns a ``ResponseText``, or a ``ChatStream`` when
    ``stream=True``.

    A streaming result owns the client and closes it once the stream is
    exhausted or closed.
    """
    client = AsyncCallAIClient(config=config, key_store=key_store, http_client=http_client)
    if not options.get("stream"):
        try:
            return await client.call(prompt, **options)
        finally:
            await client.close()

    try:
        stream = await client.stream(prompt, **options)
    except BaseException:
        await client.close()
        raise
    stream.add_close_callback(client.close)
    return stream
