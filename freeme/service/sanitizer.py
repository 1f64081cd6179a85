"""Defense-in-depth scrubbing of free text.

This is not an HTML sanitizer. Output is still expected to be encoded by
whatever renders it; the goal is to strip the obvious markup and script
vectors before text is stored or forwarded to the model.
"""

from __future__ import annotations

import re
from typing import Any

MAX_SANITIZED_LENGTH = 10000

_ANGLE_BRACKETS = re.compile(r"[<>]")
_DANGEROUS_SCHEMES = re.compile(r"(?:javascript|vbscript|data):", re.IGNORECASE)
_EVENT_HANDLERS = re.compile(r"on\w+\s*=", re.IGNORECASE)


def _strip_until_stable(value: str) -> str:
    # "javajavascript:script:" re-forms a scheme after a single pass, and
    # removing a handler can splice a scheme back together (and vice versa).
    while True:
        cleaned = _EVENT_HANDLERS.sub("", _DANGEROUS_SCHEMES.sub("", value))
        if cleaned == value:
            return cleaned
        value = cleaned


def sanitize(value: Any) -> str:
    """Strip tag, URI-scheme and inline handler vectors from ``value``.

    Non-string input yields ``""``. The result is trimmed and never longer
    than ``MAX_SANITIZED_LENGTH`` characters.
    """
    if not isinstance(value, str):
        return ""
    cleaned = _strip_until_stable(_ANGLE_BRACKETS.sub("", value))
    return cleaned.strip()[:MAX_SANITIZED_LENGTH]
