import json
from dataclasses import dataclass
from typing import Any, Union

TURN_END_EVENT = "agent_end"
PROMPT_EVENT = "prompt"


@dataclass(frozen=True)
class DecodedEvent:
    raw: str
    event: Any


@dataclass(frozen=True)
class UnparsedLine:
    raw: str


DecodedLine = Union[DecodedEvent, UnparsedLine]


def encode_prompt(text: str) -> bytes:
    envelope = {"type": PROMPT_EVENT, "message": text}
    line = json.dumps(envelope, ensure_ascii=False, separators=(",", ":"))
    return (line + "\n").encode("utf-8")


def decode_line(line: str) -> DecodedLine:
    # Agents interleave free-form text with JSON events; anything that does not
    # parse stays opaque payload.
    try:
        event = json.loads(line)
    except (TypeError, ValueError, RecursionError):
        return UnparsedLine(raw=line)
    return DecodedEvent(raw=line, event=event)


def event_type(decoded: DecodedLine) -> str:
    if not isinstance(decoded, DecodedEvent) or not isinstance(decoded.event, dict):
        return ""
    value = decoded.event.get("type")
    return value if isinstance(value, str) else ""


def is_turn_end(decoded: DecodedLine) -> bool:
    return event_type(decoded) == TURN_END_EVENT
