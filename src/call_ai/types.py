"""Shared data types for call-ai."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any

_ROLES = ("system", "user", "assistant")


# ---------------------------------------------------------------------------
# Prompt types
# ---------------------------------------------------------------------------

def normalize_messages(prompt: str | list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Turn a prompt into a message list, validating the list form.

    A plain string becomes a single user message.  Lists are returned as a
    shallow copy so the caller's ordering is preserved but never mutated.
    """
    if isinstance(prompt, str):
        if not prompt:
            raise ValueError("Invalid prompt: empty string")
        return [{"role": "user", "content": prompt}]
    if not isinstance(prompt, list) or not prompt:
        raise ValueError(
            f"Invalid prompt: {prompt!r}. Must be a string or a list of message dicts."
        )
    for message in prompt:
        if not isinstance(message, dict) or not message.get("role") or not message.get("content"):
            raise ValueError(
                "Invalid message format. Each message must have 'role' and "
                f"'content' keys. Received: {json.dumps(message, default=str)}"
            )
        if message["role"] not in _ROLES:
            raise ValueError(f"Invalid message role: {message['role']!r}")
        if not isinstance(message["content"], (str, list)):
            raise ValueError(
                "Invalid message format. 'content' must be a string or a list, "
                f"got {type(message['content']).__name__}"
            )
    return list(prompt)


@dataclass(frozen=True)
class Schema:
    """Structured-output contract passed to a call."""

    properties: dict[str, Any] = field(default_factory=dict)
    name: str | None = None
    required: list[str] | None = None
    additional_properties: bool | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Schema:
        """Build from the JSON-schema style dict (``additionalProperties`` etc.)."""
        known = {"name", "properties", "required", "additionalProperties"}
        return cls(
            properties=dict(raw.get("properties") or {}),
            name=raw.get("name"),
            required=list(raw["required"]) if raw.get("required") is not None else None,
            additional_properties=raw.get("additionalProperties"),
            extra={k: v for k, v in raw.items() if k not in known},
        )


class StrategyKind(enum.Enum):
    """How a schema is expressed on the wire for a model family."""

    NONE = "none"
    TOOL_MODE = "tool_mode"
    JSON_SCHEMA = "json_schema"
    SYSTEM_MESSAGE = "system_message"


# ---------------------------------------------------------------------------
# Call options
# ---------------------------------------------------------------------------

@dataclass
class CallOptions:
    """Per-call options.  ``None`` means "not set" and is never sent."""

    model: str | None = None
    schema: Schema | dict[str, Any] | None = None
    stream: bool = False
    api_key: str | None = None
    endpoint: str | None = None
    chat_url: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stop: str | list[str] | None = None
    response_format: str | dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    referer: str | None = None
    title: str | None = None
    skip_retry: bool = False
    skip_refresh: bool = False
    extra_params: dict[str, Any] = field(default_factory=dict)

    @property
    def resolved_schema(self) -> Schema | None:
        if self.schema is None or isinstance(self.schema, Schema):
            return self.schema
        return Schema.from_dict(self.schema)


# ---------------------------------------------------------------------------
# Response metadata
# ---------------------------------------------------------------------------

@dataclass
class Timing:
    """Epoch milliseconds."""

    start_time: float
    end_time: float | None = None
    duration: float | None = None


@dataclass
class ResponseMeta:
    """Metadata recorded for each produced result value."""

    model: str
    timing: Timing
    endpoint: str | None = None
    raw_response: dict[str, Any] | str | None = None
