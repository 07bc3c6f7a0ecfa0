"""Tests for the middleware pipeline."""

from __future__ import annotations

from typing import Any

from call_ai.llm.middleware import CallRequest, MiddlewarePipeline, NextFn
from call_ai.types import CallOptions


def _request() -> CallRequest:
    return CallRequest(messages=[{"role": "user", "content": "hi"}], options=CallOptions())


class RecordingMiddleware:
    def __init__(self, name: str, log: list[str]) -> None:
        self.name = name
        self.log = log

    async def process(self, request: CallRequest, next_fn: NextFn) -> Any:
        self.log.append(f"{self.name}:before")
        result = await next_fn(request)
        self.log.append(f"{self.name}:after")
        return result


class TestMiddlewarePipeline:
    async def test_core_only(self):
        async def core(request: CallRequest) -> str:
            return "done"

        assert await MiddlewarePipeline(core).execute(_request()) == "done"

    async def test_first_registered_is_outermost(self):
        log: list[str] = []

        async def core(request: CallRequest) -> str:
            log.append("core")
            return "ok"

        pipeline = MiddlewarePipeline(core)
        pipeline.use(RecordingMiddleware("outer", log)).use(RecordingMiddleware("inner", log))
        assert await pipeline.execute(_request()) == "ok"
        assert log == ["outer:before", "inner:before", "core", "inner:after", "outer:after"]

    async def test_middleware_can_replace_request(self):
        seen: list[str | None] = []

        async def core(request: CallRequest) -> None:
            seen.append(request.api_key)

        class SetKey:
            async def process(self, request: CallRequest, next_fn: NextFn) -> Any:
                request.api_key = "injected"
                return await next_fn(request)

        await MiddlewarePipeline(core).use(SetKey()).execute(_request())
        assert seen == ["injected"]

    def test_middlewares_is_a_copy(self):
        async def core(request: CallRequest) -> None:
            return None

        pipeline = MiddlewarePipeline(core)
        pipeline.middlewares.append(object())
        assert pipeline.middlewares == []
