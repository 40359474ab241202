"""Message-level data model shared by every layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping


def _as_bytes(payload) -> bytes:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, (bytearray, memoryview)):
        return bytes(payload)
    raise TypeError(f"event payload must be bytes or str, not {type(payload).__name__}")


@dataclass(frozen=True)
class Event:
    """An immutable application event.

    The payload is opaque bytes (a str is UTF-8 encoded on the way in). The
    headers are a read-only string-to-string mapping; equality ignores their
    insertion order.
    """

    topic: str
    payload: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.topic, str) or not self.topic:
            raise ValueError("event topic must be a non-empty string")

        headers = dict(self.headers or {})
        for key, value in headers.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise TypeError("event headers must map str to str")

        object.__setattr__(self, "payload", _as_bytes(self.payload))
        object.__setattr__(self, "headers", MappingProxyType(headers))

    def __hash__(self):
        return hash((self.topic, self.payload, frozenset(self.headers.items())))

    def __repr__(self):
        return f"Event(topic={self.topic!r}, payload={self.payload[:32]!r}, headers={dict(self.headers)!r})"


@dataclass(frozen=True)
class Ack:
    """A broker acknowledged *event* on *endpoint* after *attempts* tries."""

    event: Event
    endpoint: str
    attempts: int = 1


@dataclass(frozen=True)
class Delivery:
    """A message frame as delivered by the broker to a subscriber."""

    id: str
    attempts: int
    timestamp: float
    event: Event
