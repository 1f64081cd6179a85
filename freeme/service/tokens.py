from __future__ import annotations

import secrets
from typing import Any

TOKEN_LENGTH = 64  # hex-encoded 32-byte token


def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def constant_time_equals(a: Any, b: Any, expected_length: int = TOKEN_LENGTH) -> bool:
    """Compare two security tokens without leaking where they differ.

    Length is allowed to leak: anything that is not exactly ``expected_length``
    characters is rejected before the content comparison. The content loop
    always visits every character and never exits early.
    """
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    if len(a) != expected_length or len(b) != expected_length:
        return False

    result = 0
    for x, y in zip(a, b):
        result |= ord(x) ^ ord(y)
    return result == 0
