"""call-ai: streaming chat completions with structured output."""

from call_ai.errors import (
    AuthRequiredError,
    CallAIError,
    HttpError,
    InvalidModelError,
    KeyRefreshError,
    MalformedPayloadError,
    NetworkError,
    StreamProtocolError,
)
from call_ai.image import image_gen
from call_ai.llm import AsyncCallAIClient, ChatStream, KeyStore, call_ai
from call_ai.metadata import ResponseText, get_meta
from call_ai.types import CallOptions, ResponseMeta, Schema, StrategyKind

__version__ = "0.1.0"

__all__ = [
    "AsyncCallAIClient",
    "AuthRequiredError",
    "CallAIError",
    "CallOptions",
    "ChatStream",
    "HttpError",
    "InvalidModelError",
    "KeyRefreshError",
    "KeyStore",
    "MalformedPayloadError",
    "NetworkError",
    "ResponseMeta",
    "ResponseText",
    "Schema",
    "StrategyKind",
    "StreamProtocolError",
    "call_ai",
    "get_meta",
    "image_gen",
]
