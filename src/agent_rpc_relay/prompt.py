"""Prompt normalization for the line RPC bridge.

Agents speaking the line protocol only accept a text ``message``. Callers hand
us whatever their transport produced: plain strings, chat-style messages with a
``content`` list, loose objects carrying ``text``, or anything else. The
strategies below are tried in order; the first one that matches wins, and every
match except the plain-string one is reported as coerced so callers can log
that information may have been lost.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

PREVIEW_CHARS = 120

_MISSING = object()


@dataclass(frozen=True)
class NormalizedPrompt:
    text: str
    coerced: bool


PromptStrategy = Callable[[Any], Optional[NormalizedPrompt]]


def _field(value: Any, name: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(name, _MISSING)
    if isinstance(value, (str, bytes, int, float, bool)) or value is None:
        return _MISSING
    try:
        return getattr(value, name, _MISSING)
    except Exception:
        return _MISSING


def _compact_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def _part_text(part: Any) -> str:
    if isinstance(part, str):
        return part
    text = _field(part, "text")
    if isinstance(text, str):
        return text
    return ""


def _from_plain_string(prompt: Any) -> Optional[NormalizedPrompt]:
    if isinstance(prompt, str):
        return NormalizedPrompt(text=prompt, coerced=False)
    return None


def _from_content_parts(prompt: Any) -> Optional[NormalizedPrompt]:
    content = _field(prompt, "content")
    if not isinstance(content, (list, tuple)):
        return None
    parts = [text for text in (_part_text(part) for part in content) if text]
    combined = "\n".join(parts).strip()
    if not combined:
        return None
    return NormalizedPrompt(text=combined, coerced=True)


def _from_text_field(prompt: Any) -> Optional[NormalizedPrompt]:
    text = _field(prompt, "text")
    if isinstance(text, str):
        return NormalizedPrompt(text=text, coerced=True)
    return None


def _from_json(prompt: Any) -> Optional[NormalizedPrompt]:
    if prompt is None:
        return None
    try:
        serialized = _compact_json(prompt)
    except (TypeError, ValueError, RecursionError):
        return None
    if not serialized:
        return None
    return NormalizedPrompt(text=serialized, coerced=True)


def _from_str_fallback(prompt: Any) -> NormalizedPrompt:
    if prompt is None:
        return NormalizedPrompt(text="", coerced=True)
    try:
        text = str(prompt)
    except Exception:
        text = f"<unprintable {type(prompt).__name__}>"
    return NormalizedPrompt(text=text, coerced=True)


PROMPT_STRATEGIES: Tuple[PromptStrategy, ...] = (
    _from_plain_string,
    _from_content_parts,
    _from_text_field,
    _from_json,
)


def normalize_prompt(prompt: Any) -> NormalizedPrompt:
    for strategy in PROMPT_STRATEGIES:
        result = strategy(prompt)
        if result is not None:
            return result
    return _from_str_fallback(prompt)


def preview_prompt(prompt: Any, limit: int = PREVIEW_CHARS) -> Optional[str]:
    """Bounded, unredacted preview of the original payload for coercion diagnostics."""
    if isinstance(prompt, str):
        return prompt[:limit]
    try:
        serialized = _compact_json(prompt)
    except (TypeError, ValueError, RecursionError):
        return None
    return serialized[:limit] if serialized else None
