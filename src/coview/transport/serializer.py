"""JSON frame codec for the Phoenix channel protocol (v2)."""

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass
class Message:
    """One decoded protocol frame."""

    topic: str
    event: str
    payload: Any = field(default_factory=dict)
    ref: str | None = None
    join_ref: str | None = None


def encode(message: Message) -> str:
    """Encode a message as the ordered ``[join_ref, ref, topic, event, payload]`` array."""
    return json.dumps(
        [message.join_ref, message.ref, message.topic, message.event, message.payload],
        separators=(",", ":"),
    )


def decode(raw: str | bytes) -> Message:
    """Decode a raw frame.

    Raises:
        ValueError: If the frame is not a five element JSON array
    """
    data = json.loads(raw)
    if not isinstance(data, list) or len(data) != 5:
        raise ValueError("Frame must be a 5-element array")
    join_ref, ref, topic, event, payload = data
    return Message(topic=topic, event=event, payload=payload, ref=ref, join_ref=join_ref)
