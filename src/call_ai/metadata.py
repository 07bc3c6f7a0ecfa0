"""Identity-keyed response metadata.

Results are plain strings to the caller, so metadata cannot live on them as
attributes.  Instead it sits in a side table keyed by the identity of the
returned object and held through a weak reference, so the entry goes away
once the caller drops the result.
"""

from __future__ import annotations

import time
import weakref
from typing import Any

from call_ai.types import ResponseMeta


class ResponseText(str):
    """A ``str`` returned by call-ai.  Weak-referenceable, otherwise plain."""


def now_ms() -> float:
    return time.time() * 1000


class ResponseMetadataStore:
    """Map result objects (by identity) to their ``ResponseMeta``."""

    def __init__(self) -> None:
        self._entries: dict[int, tuple[weakref.ref, ResponseMeta]] = {}

    def set(self, value: Any, meta: ResponseMeta) -> None:
        key = id(value)

        def _drop(ref: weakref.ref, key: int = key) -> None:
            entry = self._entries.get(key)
            if entry is not None and entry[0] is ref:
                del self._entries[key]

        self._entries[key] = (weakref.ref(value, _drop), meta)

    def get(self, value: Any) -> ResponseMeta | None:
        entry = self._entries.get(id(value))
        if entry is None or entry[0]() is not value:
            return None
        return entry[1]

    def __len__(self) -> int:
        return len(self._entries)


_default_store = ResponseMetadataStore()


def default_store() -> ResponseMetadataStore:
    return _default_store


def attach_meta(text: str, meta: ResponseMeta) -> ResponseText:
    """Wrap *text* as a ``ResponseText`` and record *meta* for it."""
    result = text if isinstance(text, ResponseText) else ResponseText(text)
    _default_store.set(result, meta)
    return result


def get_meta(value: Any) -> ResponseMeta | None:
    """Return the metadata recorded for a result from call-ai, if any.

    Works for ``ResponseText`` results and ``ChatStream`` objects.  Plain
    strings never carry metadata.
    """
    return _default_store.get(value)
