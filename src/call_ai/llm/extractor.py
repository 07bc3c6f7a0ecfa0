"""Content extraction for non-streaming chat-completion responses."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

from call_ai.errors import InvalidModelError, MalformedPayloadError

from .strategies import SchemaStrategy, to_json

_logger = logging.getLogger(__name__)

_CLAUDE = re.compile(r"claude", re.I)


def read_response_body(response: httpx.Response, model: str) -> dict[str, Any]:
    """Parse a completed response body into a dict.

    Claude-family bodies are read as text and parsed explicitly; a native
    Anthropic ``{"type": "message", "content": [...]}`` body is reshaped into
    the OpenAI ``choices`` form so extraction has a single entry point.
    """
    try:
        if _CLAUDE.search(model):
            data = json.loads(response.text)
            if isinstance(data, dict) and data.get("type") == "message" and "choices" not in data:
                rest = {k: v for k, v in data.items() if k != "content"}
                data = {**rest, "choices": [{"message": {"content": data.get("content")}}]}
        else:
            data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedPayloadError(
            f"Failed to parse API response: {e}",
            status=response.status_code,
            details=response.text[:500],
            content_type=response.headers.get("content-type"),
            original=e,
        ) from e

    if not isinstance(data, dict):
        raise MalformedPayloadError(
            f"Unexpected API response: {to_json(data)[:200]}",
            status=response.status_code,
        )
    _logger.debug("Raw response: %s", to_json(data)[:2000])
    return data


def extract_content(result: dict[str, Any], strategy: SchemaStrategy) -> str:
    """Pull the answer out of a parsed body and run it through *strategy*."""
    choices = result.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        choice = choices[0]
        message = choice.get("message") or {}
        content = message.get("content")

        if isinstance(content, list):
            text = ""
            for block in content:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "tool_use":
                    return strategy.process_response(block)
                if block.get("type") == "text":
                    text += block.get("text") or ""
            return strategy.process_response(text)
        if content:
            return strategy.process_response(content)
        if message.get("function_call"):
            return strategy.process_response(message["function_call"])
        if message.get("tool_calls"):
            return strategy.process_response(message["tool_calls"])
        if choice.get("text"):
            return strategy.process_response(choice["text"])

    raise MalformedPayloadError(
        f"Failed to extract content from API response: {to_json(result)[:500]}",
        details=result,
        content_type="application/json",
    )


def _error_message(error: Any) -> str | None:
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        message = error.get("message")
        return message if isinstance(message, str) else None
    return None


def extract_response(
    result: dict[str, Any],
    strategy: SchemaStrategy,
    *,
    allow_fallback: bool = True,
) -> str:
    """Return the answer text, or the JSON error envelope for error bodies.

    An error naming an invalid model raises ``InvalidModelError`` while a
    fallback is still allowed, so the caller can retry once.
    """
    error = result.get("error")
    if not error:
        return extract_content(result, strategy)

    message = _error_message(error)
    if allow_fallback and message and "not a valid model" in message.lower():
        code = error.get("code") if isinstance(error, dict) else None
        raise InvalidModelError(
            message,
            status=code if isinstance(code, int) else 400,
            details=to_json(error),
            content_type="application/json",
        )

    _logger.error("API returned an error: %s", message or to_json(error))
    return to_json({"error": error, "message": message or "API returned an error"})
