"""Middleware pipeline around the core chat call.

Recovery policies (model fallback, credential refresh) are stacked around
the single function that actually talks to the provider, so each policy
sees the call's errors exactly once and keeps its state on the request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from call_ai.types import CallOptions

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request type
# ---------------------------------------------------------------------------

@dataclass
class CallRequest:
    """One logical call.  Replayed (as a copy) by recovery policies.

    ``state`` is shared by every copy made with ``dataclasses.replace``, so
    recovery decisions taken on any replay are visible to all layers for the
    rest of the call.
    """

    messages: list[dict[str, Any]]
    options: CallOptions
    api_key: str | None = None  # set after a key refresh
    state: dict[str, Any] = field(default_factory=dict)

    @property
    def fallback_model(self) -> str | None:
        """Model that replaced a rejected one, once fallback has happened."""
        return self.state.get("fallback_model")

    @property
    def fallback_used(self) -> bool:
        return "fallback_model" in self.state

    @property
    def key_refreshed(self) -> bool:
        return bool(self.state.get("key_refreshed"))


# ---------------------------------------------------------------------------
# Middleware protocol
# ---------------------------------------------------------------------------

# Returns ResponseText for buffered calls, ChatStream for streaming ones.
NextFn = Callable[[CallRequest], Awaitable[Any]]


class Middleware(Protocol):
    """Protocol that all middleware must implement."""

    async def process(self, request: CallRequest, next_fn: NextFn) -> Any:
        """Call *next_fn*, optionally replaying the request on failure."""
        ...


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class MiddlewarePipeline:
    """Ordered chain of middleware around a core call.

    Usage::

        pipeline = MiddlewarePipeline(client._send)
        pipeline.use(CredentialRefreshMiddleware(key_store))
        pipeline.use(ModelFallbackMiddleware())
        result = await pipeline.execute(CallRequest(messages, options))

    Middleware is executed in the order registered (first added = outermost).
    """

    def __init__(self, core: NextFn) -> None:
        self._core = core
        self._middlewares: list[Middleware] = []

    def use(self, middleware: Middleware) -> MiddlewarePipeline:
        """Register a middleware.  Returns ``self`` for chaining."""
        self._middlewares.append(middleware)
        return self

    @property
    def middlewares(self) -> list[Middleware]:
        return list(self._middlewares)

    async def execute(self, request: CallRequest) -> Any:
        """Run the full middleware chain and return the core's result."""
        chain = self._core
        for mw in reversed(self._middlewares):
            chain = _wrap(mw, chain)
        return await chain(request)


def _wrap(middleware: Middleware, next_fn: NextFn) -> NextFn:
    """Create a closure that calls ``middleware.process(req, next_fn)``."""

    async def _handler(request: CallRequest) -> Any:
        return await middleware.process(request, next_fn)

    return _handler
