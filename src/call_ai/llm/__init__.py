"""LLM client, streaming consumer and recovery middleware for call-ai."""

from call_ai.llm.client import AsyncCallAIClient, call_ai, make_options
from call_ai.llm.key_store import HttpKeyRefresher, KeyMetadata, KeyStore, is_new_key_error
from call_ai.llm.middleware import CallRequest, Middleware, MiddlewarePipeline
from call_ai.llm.recovery import CredentialRefreshMiddleware, ModelFallbackMiddleware
from call_ai.llm.strategies import SchemaStrategy, choose_schema_strategy
from call_ai.llm.stream_consumer import ChatStream, StreamConsumer

__all__ = [
    "AsyncCallAIClient",
    "CallRequest",
    "ChatStream",
    "CredentialRefreshMiddleware",
    "HttpKeyRefresher",
    "KeyMetadata",
    "KeyStore",
    "Middleware",
    "MiddlewarePipeline",
    "ModelFallbackMiddleware",
    "SchemaStrategy",
    "StreamConsumer",
    "call_ai",
    "choose_schema_strategy",
    "is_new_key_error",
    "make_options",
]
