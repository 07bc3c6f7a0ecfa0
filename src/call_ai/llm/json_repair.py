"""Heuristic repair for tool-call JSON truncated or split by streaming.

The passes are deliberately simple text patches applied in a fixed order.
They do not guarantee valid output; callers always get the patched text
back so they can inspect it.
"""

from __future__ import annotations

import json
import logging
import re

_logger = logging.getLogger(__name__)

_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_DANGLING_KEY = re.compile(r'"(\w+)"\s*:\s*\Z', re.ASCII)
_MISSING_VALUE = re.compile(r'"(\w+)"\s*:\s*,', re.ASCII)


def is_valid_json(text: str) -> bool:
    try:
        json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False
    return True


def _strip_trailing_comma(text: str) -> str:
    # Only the first occurrence is patched.
    return _TRAILING_COMMA.sub(r"\1", text, count=1)


def _close_braces(text: str) -> str:
    missing = text.count("{") - text.count("}")
    return text + "}" * missing if missing > 0 else text


def _open_brace(text: str) -> str:
    stripped = text.strip()
    return text if stripped.startswith("{") else "{" + stripped


def _end_brace(text: str) -> str:
    return text if text.strip().endswith("}") else text + "}"


def _null_dangling_key(text: str) -> str:
    return _DANGLING_KEY.sub(r'"\1":null', text)


def _null_missing_value(text: str) -> str:
    return _MISSING_VALUE.sub(r'"\1":null,', text)


def _close_brackets(text: str) -> str:
    missing = text.count("[") - text.count("]")
    return text + "]" * missing if missing > 0 else text


REPAIR_PASSES = (
    _strip_trailing_comma,
    _close_braces,
    _open_brace,
    _end_brace,
    _null_dangling_key,
    _null_missing_value,
    _close_brackets,
)


def repair_json(text: str) -> str:
    """Return *text* unchanged if it parses, otherwise the patched text."""
    if is_valid_json(text):
        return text

    fixed = text
    for fix in REPAIR_PASSES:
        fixed = fix(fixed)
    _logger.debug("Applied JSON fixes\nBefore: %s\nAfter: %s", text, fixed)

    if not is_valid_json(fixed):
        _logger.debug("JSON still invalid after repair: %s", fixed)
    return fixed
