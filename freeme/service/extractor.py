"""Recover a structured intent from a model's free-text completion.

The model is asked for bare JSON but routinely wraps it in code fences or
surrounds it with prose. Recovery is a prioritized list of pure parsing
strategies; the first one that yields a JSON object wins, and the result is
always shape-checked afterwards. Nothing here guesses at an action.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from freeme.logging import get_logger
from freeme.service.errors import ParseFailureError
from freeme.service.intents import Intent, intent_from_payload

logger = get_logger(__name__)

EXCERPT_LENGTH = 100

_FENCE = re.compile(r"```(?:json|JSON)?\s*")


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_direct(text: str) -> Optional[Dict[str, Any]]:
    return _loads_object(text.strip())


def parse_fenced(text: str) -> Optional[Dict[str, Any]]:
    """Drop ```json / ``` markers and parse what is left."""
    if "```" not in text:
        return None
    return _loads_object(_FENCE.sub("", text).strip())


def find_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` substring, honouring JSON strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_str = False
        esc = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_str:
                if esc:
                    esc = False
                elif ch == "\\":
                    esc = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        # Unbalanced from this brace; try the next opening brace
        start = text.find("{", start + 1)
    return None


def parse_balanced_braces(text: str) -> Optional[Dict[str, Any]]:
    candidate = find_balanced_object(text)
    if candidate is None:
        return None
    return _loads_object(candidate)


STRATEGIES: List[Tuple[str, Callable[[str], Optional[Dict[str, Any]]]]] = [
    ("direct", parse_direct),
    ("fenced", parse_fenced),
    ("balanced_braces", parse_balanced_braces),
]


def excerpt(text: Any, length: int = EXCERPT_LENGTH) -> str:
    return str(text or "")[:length]


def extract_structure(raw_text: Any) -> Dict[str, Any]:
    """Run the strategies in order; raise ParseFailureError if none succeeds."""
    if not isinstance(raw_text, str) or not raw_text.strip():
        raise ParseFailureError(detail={"reason": "empty response", "excerpt": ""})

    for name, strategy in STRATEGIES:
        parsed = strategy(raw_text)
        if parsed is not None:
            logger.debug("intent_structure_recovered", strategy=name)
            return parsed

    raise ParseFailureError(
        "Sorry, I had trouble processing that. Please try rephrasing.",
        detail={"reason": "no JSON object found", "excerpt": excerpt(raw_text)},
    )


def extract_intent(raw_text: Any) -> Intent:
    return intent_from_payload(extract_structure(raw_text))
