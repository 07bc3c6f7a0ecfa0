"""Incremental SSE consumption for chat-completion streams.

Three layers, innermost first:

``SSEFrameSplitter``
    bytes -> complete ``data: ...`` frames.  Uses an incremental UTF-8
    decoder so a multi-byte character split across two reads survives, and
    keeps the trailing partial frame for the next read.

``StreamConsumer``
    frames -> values to emit.  Owns the per-call ``StreamAccumulator`` and
    understands the provider-specific shapes (OpenAI deltas, tool-call
    argument fragments, Anthropic content blocks).  Pure and synchronous:
    ``feed()`` one network chunk, get zero or more values back.

``ChatStream``
    the caller-facing async iterator.  Pulls one network read at a time,
    only when no emitted value is pending.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from call_ai.errors import StreamProtocolError
from call_ai.metadata import ResponseText, attach_meta, default_store, now_ms
from call_ai.types import ResponseMeta, StrategyKind, Timing

from .json_repair import repair_json
from .strategies import SchemaStrategy, to_json

_logger = logging.getLogger(__name__)

_DATA_PREFIX = "data: "
_DONE = "[DONE]"


# ---------------------------------------------------------------------------
# Frame splitting
# ---------------------------------------------------------------------------

class SSEFrameSplitter:
    """Split a byte stream into SSE frames on blank-line separators."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        return self._split()

    def flush(self) -> list[str]:
        """Return whatever is left once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        frames = self._split()
        rest, self._buffer = self._buffer, ""
        if rest.strip():
            frames.append(rest)
        return frames

    def _split(self) -> list[str]:
        self._buffer = self._buffer.replace("\r\n", "\n")
        *frames, self._buffer = self._buffer.split("\n\n")
        return frames


# ---------------------------------------------------------------------------
# Per-call state machine
# ---------------------------------------------------------------------------

@dataclass
class StreamAccumulator:
    """Mutable state for one streaming consumption."""

    complete_text: str = ""
    tool_call_buffer: str = ""
    chunk_count: int = 0
    tool_call_emitted: bool = False


def _find_tool_use(blocks: Any) -> dict[str, Any] | None:
    if not isinstance(blocks, list):
        return None
    for block in blocks:
        if isinstance(block, dict) and block.get("type") == "tool_use":
            return block
    return None


class StreamConsumer:
    """Turn SSE frames into successive renderings of the answer.

    Call ``feed()`` for every network read and ``finish()`` once when the
    stream ends.  ``final_text`` and ``meta`` are set by ``finish()``.
    """

    def __init__(self, strategy: SchemaStrategy, endpoint: str | None = None) -> None:
        self.strategy = strategy
        self.acc = StreamAccumulator()
        self.meta = ResponseMeta(
            model=strategy.model,
            endpoint=endpoint,
            timing=Timing(start_time=now_ms()),
        )
        self.final_text: ResponseText | None = None
        self._tool_mode = strategy.kind is StrategyKind.TOOL_MODE
        self._splitter = SSEFrameSplitter()
        self._emitted = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, chunk: bytes) -> list[str]:
        """Process one network read.  Returns the values to emit, in order."""
        out: list[str] = []
        for frame in self._splitter.feed(chunk):
            out.extend(self._process_frame(frame))
        if out:
            self._emitted = True
        return out

    def finish(self) -> list[str]:
        """Run the completion step and record metadata for the final text."""
        out: list[str] = []
        for frame in self._splitter.flush():
            out.extend(self._process_frame(frame))

        acc = self.acc
        if acc.tool_call_buffer and not acc.tool_call_emitted:
            acc.complete_text = repair_json(acc.tool_call_buffer)
            acc.tool_call_emitted = True
            out.append(acc.complete_text)
        elif self._tool_mode and acc.complete_text and not (self._emitted or out):
            # Tool-mode model answered in plain text; emit it once, processed.
            acc.complete_text = self.strategy.process_response(acc.complete_text)
            out.append(acc.complete_text)
        if out:
            self._emitted = True

        _logger.debug("Stream finished after %d chunks", acc.chunk_count)
        end = now_ms()
        self.meta.timing.end_time = end
        self.meta.timing.duration = end - self.meta.timing.start_time
        self.meta.raw_response = acc.complete_text
        self.final_text = attach_meta(acc.complete_text, self.meta)
        return out

    # ------------------------------------------------------------------
    # Frame handling
    # ------------------------------------------------------------------

    def _process_frame(self, frame: str) -> list[str]:
        if not frame.startswith(_DATA_PREFIX):
            return []
        payload = frame[len(_DATA_PREFIX):].strip()
        if payload == _DONE:
            _logger.debug("Received [DONE] signal")
            return []

        self.acc.chunk_count += 1
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            _logger.debug("Skipping unparsable stream frame (%s): %.200s", e, payload)
            return []
        if not isinstance(data, dict):
            return []

        choices = data.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices else {}
        if not isinstance(choice, dict):
            choice = {}

        self._raise_for_error(data, choice)
        return self._dispatch(data, choice)

    def _raise_for_error(self, data: dict[str, Any], choice: dict[str, Any]) -> None:
        error = data.get("error")
        if not (error or data.get("type") == "error" or choice.get("finish_reason") == "error"):
            return

        status, status_text = 400, "Bad Request"
        if isinstance(error, dict):
            message = error.get("message") or to_json(error)
            status = error.get("status") or error.get("code") or status
            status_text = error.get("type") or status_text
        elif isinstance(error, str):
            message = error
        else:
            message = (choice.get("message") or {}).get("content") or "Unknown streaming error"
        if not isinstance(status, int):
            status = 400

        _logger.error("Detected error in streaming response: %s", message)
        raise StreamProtocolError(
            f"API streaming error: {message}",
            status=status,
            status_text=status_text,
            details=to_json(error or data),
            content_type="application/json",
        )

    def _dispatch(self, data: dict[str, Any], choice: dict[str, Any]) -> list[str]:
        acc = self.acc
        delta = choice.get("delta") or {}
        message = choice.get("message") or {}

        if self._tool_mode and choice:
            if choice.get("finish_reason") == "tool_calls":
                if acc.tool_call_emitted or not acc.tool_call_buffer:
                    return []
                _logger.debug("Tool call complete, assembled: %s", acc.tool_call_buffer)
                acc.tool_call_buffer = repair_json(acc.tool_call_buffer)
                acc.complete_text = acc.tool_call_buffer
                acc.tool_call_emitted = True
                return [acc.complete_text]

            tool_calls = delta.get("tool_calls")
            if isinstance(tool_calls, list) and tool_calls:
                func = (tool_calls[0] or {}).get("function") or {}
                fragment = func.get("arguments")
                if isinstance(fragment, str):
                    acc.tool_call_buffer += fragment

        if self._tool_mode and (data.get("stop_reason") == "tool_use" or data.get("type") == "tool_use"):
            block = (
                data if data.get("type") == "tool_use"
                else _find_tool_use(data.get("content"))
                or _find_tool_use(message.get("content"))
                or _find_tool_use(delta.get("content"))
            )
            if block is not None:
                acc.complete_text = self.strategy.process_response(block)
                return [acc.complete_text]

        out: list[str] = []
        if "content" in delta:
            self._append_content(delta.get("content"), out)
        elif "content" in message:
            self._append_content(message.get("content"), out)

        if data.get("type") == "content_block_delta":
            block_delta = data.get("delta") or {}
            if block_delta.get("type") == "text_delta" and block_delta.get("text"):
                acc.complete_text += block_delta["text"]
                if not self._tool_mode:
                    out.append(self.strategy.process_response(acc.complete_text))
        return out

    def _append_content(self, content: Any, out: list[str]) -> None:
        acc = self.acc
        if isinstance(content, list):
            for block in content:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text":
                    acc.complete_text += block.get("text") or ""
                elif self._tool_mode and block.get("type") == "tool_use":
                    acc.complete_text = self.strategy.process_response(block)
                    out.append(acc.complete_text)
                    return
        elif isinstance(content, str):
            acc.complete_text += content
        if not self._tool_mode:
            out.append(self.strategy.process_response(acc.complete_text))


# ---------------------------------------------------------------------------
# Caller-facing iterator
# ---------------------------------------------------------------------------

class ChatStream:
    """Async iterator over successive renderings of a streamed answer.

    Usage::

        async with await client.stream("Tell me a joke", options) as stream:
            async for partial in stream:
                print(partial)
        print(stream.final_text)

    Not restartable.  Leaving early (``aclose()`` or the ``async with``
    block) releases the HTTP response without further reads.
    """

    def __init__(self, response: httpx.Response, consumer: StreamConsumer) -> None:
        self._response = response
        self._consumer = consumer
        self._byte_iter: AsyncIterator[bytes] | None = None
        self._pending: deque[str] = deque()
        self._done = False
        self._closed = False
        self._close_callbacks: list[Callable[[], Awaitable[None]]] = []

    def add_close_callback(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Run *callback* once the stream has released its response."""
        self._close_callbacks.append(callback)

    @property
    def final_text(self) -> ResponseText | None:
        """The terminal value, available once the stream is exhausted."""
        return self._consumer.final_text

    @property
    def meta(self) -> ResponseMeta:
        return self._consumer.meta

    @property
    def chunk_count(self) -> int:
        return self._consumer.acc.chunk_count

    def __aiter__(self) -> ChatStream:
        return self

    async def __anext__(self) -> str:
        while not self._pending:
            if self._done:
                raise StopAsyncIteration
            await self._pull()
        return self._pending.popleft()

    async def _pull(self) -> None:
        if self._byte_iter is None:
            self._byte_iter = self._response.aiter_bytes()
        try:
            try:
                chunk = await self._byte_iter.__anext__()
            except StopAsyncIteration:
                self._pending.extend(self._consumer.finish())
                self._done = True
                default_store().set(self, self._consumer.meta)
            else:
                self._pending.extend(self._consumer.feed(chunk))
        except BaseException:
            self._done = True
            await self.aclose()
            raise
        if self._done:
            await self.aclose()

    async def collect(self) -> ResponseText | None:
        """Drain the stream and return the final text."""
        async for _ in self:
            pass
        return self.final_text

    async def aclose(self) -> None:
        """Stop reading and release the underlying response."""
        self._done = True
        if self._closed:
            return
        self._closed = True
        if self._byte_iter is not None and hasattr(self._byte_iter, "aclose"):
            await self._byte_iter.aclose()
        await self._response.aclose()
        for callback in self._close_callbacks:
            await callback()

    async def __aenter__(self) -> ChatStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
