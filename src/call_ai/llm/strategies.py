"""Per-model-family request shaping and response parsing.

``choose_schema_strategy`` maps a model id and an optional schema onto one
of four ``StrategyKind`` variants.  Precedence (first match wins,
case-insensitive):

  ==========================  ==================
  condition                   strategy
  ==========================  ==================
  no schema                   none
  ``claude``                  tool_mode (forces streaming)
  ``gemini``                  json_schema (lenient parsing)
  ``gpt-4-turbo``             system_message
  ``openai|gpt``              json_schema (strict)
  ``llama-3|deepseek``        system_message
  anything else               system_message
  ==========================  ==================
"""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass
from typing import Any, Callable

from call_ai.types import Schema, StrategyKind

DEFAULT_SCHEMA_MODEL = "openai/gpt-4o"
DEFAULT_MODEL = "openrouter/auto"

_FENCED_JSON = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL)
_FENCED_ANY = re.compile(r"```\s*(.*?)\s*```", re.DOTALL)
_BARE_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def to_json(value: Any) -> str:
    """Compact JSON serialization, matching what providers send."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def extract_json_block(content: str) -> str:
    """Pull a fenced or bare JSON object out of *content* if one is present."""
    for pattern in (_FENCED_JSON, _FENCED_ANY):
        match = pattern.search(content)
        if match:
            return match.group(1)
    match = _BARE_OBJECT.search(content)
    if match:
        return match.group(0)
    return content


def recursively_add_additional_properties(schema: dict[str, Any]) -> dict[str, Any]:
    """Apply OpenAI strict-mode rules to every object in *schema*.

    Each object gets ``additionalProperties: false`` (unless set) and a
    ``required`` list.  Nested objects and array items always require all of
    their keys; the top level keeps an explicit ``required``.  The input is
    never mutated.
    """
    result = copy.deepcopy(schema)
    _apply_strict(result, top_level=True)
    return result


def _apply_strict(node: dict[str, Any], top_level: bool = False) -> None:
    if node.get("type") == "object":
        node.setdefault("additionalProperties", False)
        props = node.get("properties")
        if isinstance(props, dict):
            if not top_level or node.get("required") is None:
                node["required"] = list(props)
            for value in props.values():
                if isinstance(value, dict):
                    _apply_strict(value)
    if node.get("type") == "array" and isinstance(node.get("items"), dict):
        _apply_strict(node["items"])


def _object_schema(schema: Schema) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": dict(schema.properties),
        "required": list(schema.required) if schema.required is not None else list(schema.properties),
        "additionalProperties": (
            schema.additional_properties if schema.additional_properties is not None else False
        ),
    }


# ---------------------------------------------------------------------------
# Strategy bundles
# ---------------------------------------------------------------------------

PrepareFn = Callable[[Schema | None, list[dict[str, Any]]], dict[str, Any]]
ProcessFn = Callable[[Any], str]


@dataclass(frozen=True)
class ModelStrategy:
    """A named, pure bundle of request-shaping and response-parsing behavior."""

    name: str
    prepare_request: PrepareFn
    process_response: ProcessFn
    should_force_stream: bool = False


def _default_prepare(schema: Schema | None, messages: list[dict[str, Any]]) -> dict[str, Any]:
    return {}


def _default_process(content: Any) -> str:
    return content if isinstance(content, str) else to_json(content)


def _openai_prepare(schema: Schema | None, messages: list[dict[str, Any]]) -> dict[str, Any]:
    if schema is None:
        return {}
    processed = {**_object_schema(schema), **schema.extra}
    return {
        "response_format": {
            "type": "json_schema",
            "json_schema": {
                "name": schema.name or "result",
                "strict": True,
                "schema": recursively_add_additional_properties(processed),
            },
        },
    }


def _lenient_process(content: Any) -> str:
    if not isinstance(content, str):
        return to_json(content)
    return extract_json_block(content)


def _claude_prepare(schema: Schema | None, messages: list[dict[str, Any]]) -> dict[str, Any]:
    if schema is None:
        return {}
    tool_name = schema.name or "generate_structured_data"
    return {
        "tools": [
            {
                "type": "function",
                "function": {
                    "name": tool_name,
                    "description": "Generate data according to the required schema",
                    "parameters": _object_schema(schema),
                },
            }
        ],
        "tool_choice": {"type": "function", "function": {"name": tool_name}},
    }


def _claude_process(content: Any) -> str:
    if isinstance(content, dict) and content.get("type") == "tool_use":
        tool_input = content.get("input", {})
        return tool_input if isinstance(tool_input, str) else to_json(tool_input)
    if isinstance(content, list) and content and isinstance(content[0], dict):
        func = content[0].get("function") or {}
        arguments = func.get("arguments")
        if arguments is not None:
            return arguments if isinstance(arguments, str) else to_json(arguments)
    return _lenient_process(content)


def _system_message_prepare(
    schema: Schema | None, messages: list[dict[str, Any]],
) -> dict[str, Any]:
    if schema is None or any(m.get("role") == "system" for m in messages):
        return {"messages": messages}
    lines = []
    for key, value in schema.properties.items():
        value = value if isinstance(value, dict) else {}
        description = f" // {value['description']}" if value.get("description") else ""
        lines.append(f'  "{key}": {value.get("type", "string")}{description}')
    system_message = {
        "role": "system",
        "content": (
            "Please return your response as JSON following this schema exactly:\n"
            "{\n" + ",\n".join(lines) + "\n}\n"
            "Do not include any explanation or text outside of the JSON object."
        ),
    }
    return {"messages": [system_message, *messages]}


DEFAULT_STRATEGY = ModelStrategy("default", _default_prepare, _default_process)
OPENAI_STRATEGY = ModelStrategy("openai", _openai_prepare, _default_process)
GEMINI_STRATEGY = ModelStrategy("gemini", _openai_prepare, _lenient_process)
CLAUDE_STRATEGY = ModelStrategy(
    "anthropic", _claude_prepare, _claude_process, should_force_stream=True,
)
SYSTEM_MESSAGE_STRATEGY = ModelStrategy(
    "system_message", _system_message_prepare, _lenient_process,
)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SchemaStrategy:
    """A resolved strategy bound to a concrete model id."""

    kind: StrategyKind
    model: str
    strategy: ModelStrategy

    @property
    def should_force_stream(self) -> bool:
        return self.strategy.should_force_stream

    def prepare_request(
        self, schema: Schema | None, messages: list[dict[str, Any]],
    ) -> dict[str, Any]:
        return self.strategy.prepare_request(schema, messages)

    def process_response(self, content: Any) -> str:
        return self.strategy.process_response(content)


_RULES: list[tuple[re.Pattern[str], StrategyKind, ModelStrategy]] = [
    (re.compile(r"claude", re.I), StrategyKind.TOOL_MODE, CLAUDE_STRATEGY),
    (re.compile(r"gemini", re.I), StrategyKind.JSON_SCHEMA, GEMINI_STRATEGY),
    (re.compile(r"gpt-4-turbo", re.I), StrategyKind.SYSTEM_MESSAGE, SYSTEM_MESSAGE_STRATEGY),
    (re.compile(r"openai|gpt", re.I), StrategyKind.JSON_SCHEMA, OPENAI_STRATEGY),
    (re.compile(r"llama-3|deepseek", re.I), StrategyKind.SYSTEM_MESSAGE, SYSTEM_MESSAGE_STRATEGY),
]


def choose_schema_strategy(model: str | None, schema: Schema | None) -> SchemaStrategy:
    """Select the strategy for *model* and *schema*.  Never raises."""
    resolved = model or (DEFAULT_SCHEMA_MODEL if schema is not None else DEFAULT_MODEL)
    if schema is None:
        return SchemaStrategy(StrategyKind.NONE, resolved, DEFAULT_STRATEGY)
    for pattern, kind, strategy in _RULES:
        if pattern.search(resolved):
            return SchemaStrategy(kind, resolved, strategy)
    return SchemaStrategy(StrategyKind.SYSTEM_MESSAGE, resolved, SYSTEM_MESSAGE_STRATEGY)
