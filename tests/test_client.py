"""Tests for AsyncCallAIClient against a mock transport."""

from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest

from call_ai import call_ai, get_meta
from call_ai.config import CallAIConfig
from call_ai.errors import AuthRequiredError, HttpError, InvalidModelError, StreamProtocolError
from call_ai.llm.client import AsyncCallAIClient, make_options
from call_ai.llm.key_store import KeyStore
from call_ai.llm.stream_consumer import ChatStream
from call_ai.types import CallOptions, Schema

CHAT_URL = "https://vibes-diy-api.com/api/v1/chat/completions"
SCHEMA = Schema(properties={"name": {"type": "string"}})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _sse(*payloads: dict | str) -> bytes:
    frames = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        frames.append(f"data: {data}\n\n")
    return "".join(frames).encode()


def _sse_response(*payloads: dict | str) -> httpx.Response:
    return httpx.Response(
        200, headers={"content-type": "text/event-stream"}, content=_sse(*payloads),
    )


class Recorder:
    """Mock transport handler that replays canned responses and keeps requests."""

    def __init__(self, *responses: httpx.Response | Callable[[httpx.Request], httpx.Response]) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        return response(request) if callable(response) else response

    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def _client(recorder: Recorder, *, key_store: KeyStore | None = None, **config) -> AsyncCallAIClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return AsyncCallAIClient(
        config=CallAIConfig(api_key="sk-env", **config),
        key_store=key_store,
        http_client=http,
    )


# ---------------------------------------------------------------------------
# Non-streaming
# ---------------------------------------------------------------------------

class TestCall:
    async def test_success_with_meta(self):
        recorder = Recorder(httpx.Response(200, json=_completion("Hello!")))
        client = _client(recorder)

        text = await client.call("Hi", model="openai/gpt-4o")

        assert text == "Hello!"
        meta = get_meta(text)
        assert meta.model == "openai/gpt-4o"
        assert meta.endpoint == CHAT_URL
        assert meta.raw_response == _completion("Hello!")
        assert meta.timing.duration >= 0

        (request,) = recorder.requests
        assert str(request.url) == CHAT_URL
        assert request.headers["authorization"] == "Bearer sk-env"
        assert recorder.bodies()[0]["stream"] is False

    async def test_messages_passed_through(self):
        recorder = Recorder(httpx.Response(200, json=_completion("ok")))
        messages = [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Hi"},
        ]
        await _client(recorder).call(messages, model="openai/gpt-4o")
        assert recorder.bodies()[0]["messages"] == messages

    async def test_schema_extracts_json(self):
        recorder = Recorder(httpx.Response(200, json=_completion('```json\n{"name": "Ada"}\n```')))
        text = await _client(recorder).call("Who?", model="deepseek/deepseek-chat", schema=SCHEMA)
        assert json.loads(text) == {"name": "Ada"}

    async def test_invalid_prompt(self):
        with pytest.raises(ValueError):
            await _client(Recorder()).call("")

    async def test_invalid_model_falls_back_once(self):
        recorder = Recorder(
            httpx.Response(400, json={"error": {"message": "bogus/model is not a valid model ID"}}),
            httpx.Response(200, json=_completion("from fallback")),
        )
        text = await _client(recorder).call("Hi", model="bogus/model")

        assert text == "from fallback"
        assert [b["model"] for b in recorder.bodies()] == ["bogus/model", "openrouter/auto"]

    async def test_invalid_model_in_2xx_body_falls_back(self):
        recorder = Recorder(
            httpx.Response(200, json={"error": "bogus/model is not a valid model ID"}),
            httpx.Response(200, json=_completion("ok")),
        )
        assert await _client(recorder).call("Hi", model="bogus/model") == "ok"
        assert len(recorder.requests) == 2

    async def test_fallback_rejected_propagates(self):
        rejected = {"error": {"message": "model not found"}}
        recorder = Recorder(httpx.Response(404, json=rejected), httpx.Response(404, json=rejected))
        with pytest.raises(InvalidModelError):
            await _client(recorder).call("Hi", model="bogus/model")
        assert len(recorder.requests) == 2

    async def test_skip_retry(self):
        recorder = Recorder(httpx.Response(404, json={"error": {"message": "model not found"}}))
        with pytest.raises(InvalidModelError):
            await _client(recorder).call("Hi", model="bogus/model", skip_retry=True)
        assert len(recorder.requests) == 1

    async def test_rejected_key_refreshed_and_replayed(self):
        async def refresher(current):
            return "sk-fresh"

        recorder = Recorder(
            httpx.Response(401, json={"error": {"message": "Invalid API key"}}),
            httpx.Response(200, json=_completion("ok")),
        )
        store = KeyStore(refresher=refresher)
        text = await _client(recorder, key_store=store).call("Hi", model="openai/gpt-4o")

        assert text == "ok"
        auths = [r.headers["authorization"] for r in recorder.requests]
        assert auths == ["Bearer sk-env", "Bearer sk-fresh"]
        assert store.current == "sk-fresh"

    async def test_refresh_uses_key_service(self):
        def chat_or_keys(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/keys"
            return httpx.Response(200, json={"key": "sk-service"})

        recorder = Recorder(
            httpx.Response(401, json={"error": "unauthorized"}),
            chat_or_keys,
            httpx.Response(200, json=_completion("ok")),
        )
        client = _client(recorder, refresh_endpoint="https://keys.test")
        assert await client.call("Hi", model="openai/gpt-4o") == "ok"
        assert recorder.requests[2].headers["authorization"] == "Bearer sk-service"

    async def test_refresh_failure_surfaces_original(self):
        recorder = Recorder(
            httpx.Response(401, json={"error": "unauthorized"}),
            httpx.Response(500, text="key service down"),
        )
        with pytest.raises(AuthRequiredError):
            await _client(recorder).call("Hi", model="openai/gpt-4o")

    async def test_refresher_crash_surfaces_original(self):
        async def refresher(current):
            raise RuntimeError("key service exploded")

        recorder = Recorder(httpx.Response(401, json={"error": {"message": "Invalid API key"}}))
        store = KeyStore(refresher=refresher)
        with pytest.raises(AuthRequiredError) as exc_info:
            await _client(recorder, key_store=store).call("Hi", model="openai/gpt-4o")
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert len(recorder.requests) == 1

    async def test_fallback_then_key_refresh_keeps_fallback_model(self):
        async def refresher(current):
            return "sk-fresh"

        recorder = Recorder(
            httpx.Response(400, json={"error": {"message": "bogus/model is not a valid model ID"}}),
            httpx.Response(401, json={"error": {"message": "Invalid API key"}}),
            httpx.Response(200, json=_completion("ok")),
        )
        store = KeyStore(refresher=refresher)
        text = await _client(recorder, key_store=store).call("Hi", model="bogus/model")

        assert text == "ok"
        assert len(recorder.requests) == 3
        assert [b["model"] for b in recorder.bodies()] == [
            "bogus/model", "openrouter/auto", "openrouter/auto",
        ]
        assert recorder.requests[2].headers["authorization"] == "Bearer sk-fresh"

    async def test_server_error(self):
        recorder = Recorder(httpx.Response(500, text="Internal failure"))
        with pytest.raises(HttpError) as exc_info:
            await _client(recorder).call("Hi", model="openai/gpt-4o")
        assert exc_info.value.status == 500
        assert len(recorder.requests) == 1

    async def test_network_error_propagates_verbatim(self):
        def fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(httpx.ConnectError):
            await _client(Recorder(fail)).call("Hi", model="openai/gpt-4o")


class TestForcedStreaming:
    async def test_claude_schema_buffered(self):
        recorder = Recorder(_sse_response(
            {"choices": [{"delta": {"tool_calls": [{"function": {"arguments": '{"name":'}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"function": {"arguments": '"Ada"}'}}]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
            "[DONE]",
        ))
        text = await _client(recorder).call("Who?", model="anthropic/claude-3-sonnet", schema=SCHEMA)

        assert json.loads(text) == {"name": "Ada"}
        body = recorder.bodies()[0]
        assert body["stream"] is True
        assert body["tool_choice"]["function"]["name"] == "generate_structured_data"
        assert get_meta(text).model == "anthropic/claude-3-sonnet"

    async def test_empty_forced_stream_returns_empty_text(self):
        recorder = Recorder(_sse_response("[DONE]"))
        text = await _client(recorder).call("Who?", model="anthropic/claude-3-sonnet", schema=SCHEMA)

        assert text == ""
        assert get_meta(text).model == "anthropic/claude-3-sonnet"


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class TestStream:
    async def test_yields_accumulated_text(self):
        recorder = Recorder(_sse_response(
            {"choices": [{"delta": {"content": "Once "}}]},
            {"choices": [{"delta": {"content": "upon"}}]},
            "[DONE]",
        ))
        stream = await _client(recorder).stream("Story", model="openai/gpt-4o")
        assert isinstance(stream, ChatStream)

        async with stream:
            values = [v async for v in stream]

        assert values == ["Once ", "Once upon"]
        assert stream.final_text == "Once upon"
        assert get_meta(stream).endpoint == CHAT_URL
        assert recorder.bodies()[0]["stream"] is True

    async def test_http_error_raised_before_iteration(self):
        recorder = Recorder(httpx.Response(500, text="down"))
        with pytest.raises(HttpError):
            await _client(recorder).stream("Story", model="openai/gpt-4o")

    async def test_json_body_on_stream_is_error(self):
        recorder = Recorder(httpx.Response(200, json={"error": {"message": "quota hit"}}))
        with pytest.raises(HttpError, match="quota hit"):
            await _client(recorder).stream("Story", model="openai/gpt-4o", skip_refresh=True)

    async def test_invalid_model_falls_back_before_stream(self):
        recorder = Recorder(
            httpx.Response(404, json={"error": {"message": "model not found"}}),
            _sse_response({"choices": [{"delta": {"content": "hi"}}]}),
        )
        stream = await _client(recorder).stream("Story", model="bogus/model")
        assert await stream.collect() == "hi"
        assert [b["model"] for b in recorder.bodies()] == ["bogus/model", "openrouter/auto"]

    async def test_in_band_error_not_retried(self):
        recorder = Recorder(_sse_response(
            {"choices": [{"delta": {"content": "par"}}]},
            {"error": {"message": "Rate limited", "status": 429}},
        ))
        stream = await _client(recorder).stream("Story", model="openai/gpt-4o")
        with pytest.raises(StreamProtocolError):
            await stream.collect()
        assert len(recorder.requests) == 1


# ---------------------------------------------------------------------------
# Convenience entry points
# ---------------------------------------------------------------------------

class TestCallAi:
    async def test_buffered(self):
        recorder = Recorder(httpx.Response(200, json=_completion("ok")))
        http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        text = await call_ai(
            "Hi", config=CallAIConfig(api_key="k"), http_client=http, model="openai/gpt-4o",
        )
        assert text == "ok"

    async def test_streaming(self):
        recorder = Recorder(_sse_response({"choices": [{"delta": {"content": "a"}}]}))
        http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        stream = await call_ai(
            "Hi", config=CallAIConfig(api_key="k"), http_client=http,
            model="openai/gpt-4o", stream=True,
        )
        assert [v async for v in stream] == ["a"]

    async def test_unknown_options_become_body_params(self):
        recorder = Recorder(httpx.Response(200, json=_completion("ok")))
        http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        await call_ai(
            "Hi", config=CallAIConfig(api_key="k"), http_client=http,
            model="openai/gpt-4o", seed=7,
        )
        assert recorder.bodies()[0]["seed"] == 7


class TestMakeOptions:
    def test_overrides_applied(self):
        opts = make_options(CallOptions(model="a"), temperature=0.2)
        assert opts.model == "a"
        assert opts.temperature == 0.2

    def test_unknown_keys_to_extra_params(self):
        opts = make_options(CallOptions(extra_params={"x": 1}), seed=3)
        assert opts.extra_params == {"x": 1, "seed": 3}

    def test_base_not_mutated(self):
        base = CallOptions()
        make_options(base, model="b", seed=1)
        assert base.model is None
        assert base.extra_params == {}
