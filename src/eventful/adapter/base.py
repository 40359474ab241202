"""Wire adapter interface.

This is the (small) contract that each broker family implements. Adapters
only translate between events/commands and bytes; every read and write is
done by the connection layer, which hands complete inbound frames to
:meth:`Adapter.decode`.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..errors import ProtocolError, UnsupportedCapability
from ..event import Event
from . import envelope


# Capability vocabulary

PUBLISH = "publish"
SUBSCRIBE = "subscribe"
ACK = "ack"
REQUEUE = "requeue"
HEARTBEAT = "heartbeat"

CAPABILITIES = frozenset((PUBLISH, SUBSCRIBE, ACK, REQUEUE, HEARTBEAT))


# Decoded inbound frames, other than deliveries (see eventful.event.Delivery)

@dataclass(frozen=True)
class Response:
    """A positive answer from the broker, such as ``OK`` to a PUB."""

    data: bytes = b""
    id: Optional[str] = None


@dataclass(frozen=True)
class Failure:
    """An error frame from the broker."""

    code: str
    text: str = ""
    retryable: bool = False
    id: Optional[str] = None

    def error(self) -> ProtocolError:
        return ProtocolError(self.text, code=self.code, retryable=self.retryable)


@dataclass(frozen=True)
class Heartbeat:
    """The broker checking that we are alive; answer with :meth:`Adapter.heartbeat`."""


_NAME = re.compile(r"^[.a-zA-Z0-9_-]+(#ephemeral)?$")


class Adapter(ABC):
    """Translate abstract bus operations to one broker family's protocol."""

    name: str = ""
    transport: str = "tcp"
    default_port: int = 0
    capabilities = frozenset()

    def __repr__(self):
        return f"<{type(self).__name__} {self.name!r}>"

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def require(self, *capabilities: str) -> None:
        for capability in capabilities:
            if capability not in self.capabilities:
                raise UnsupportedCapability(capability, self.name)

    def validate_name(self, name: str, kind: str = "topic") -> str:
        if not isinstance(name, str) or not 0 < len(name) <= 64 or not _NAME.match(name):
            raise ValueError(f"invalid {kind} name: {name!r}")
        return name

    # Message bodies

    def pack(self, event: Event) -> bytes:
        return envelope.pack_body(event)

    def unpack(self, body: bytes, topic: str) -> Event:
        return envelope.unpack_body(body, topic)

    # Protocol

    @abstractmethod
    def negotiate(self, connection) -> dict:
        """Perform the handshake on a freshly opened connection."""

    @abstractmethod
    def encode(self, event: Event) -> bytes:
        """Return the bytes that publish *event*."""

    @abstractmethod
    def decode(self, frame: bytes, topic: Optional[str] = None):
        """Decode one complete inbound frame.

        *topic* is the subscribed topic of the connection the frame arrived
        on, for protocols whose message frames do not repeat it.

        Returns an :class:`~eventful.event.Event`, a
        :class:`~eventful.event.Delivery`, or one of the control frames
        :class:`Response`, :class:`Failure`, :class:`Heartbeat`. Raises
        :class:`~eventful.errors.ProtocolError` on malformed input.
        """

    @abstractmethod
    def subscribe(self, topic: str, channel: str) -> bytes:
        """Return the bytes that subscribe to *topic* on *channel*."""

    def ready(self, count: int) -> Optional[bytes]:
        """Flow control; None when the broker family has none."""
        return None

    def ack(self, message_id: str) -> bytes:
        self.require(ACK)
        raise NotImplementedError

    def requeue(self, message_id: str, delay: float = 0) -> bytes:
        self.require(REQUEUE)
        raise NotImplementedError

    def touch(self, message_id: str) -> Optional[bytes]:
        """Extend a message's broker-side deadline; None if unsupported."""
        return None

    def heartbeat(self) -> bytes:
        self.require(HEARTBEAT)
        raise NotImplementedError

    def close(self) -> Optional[bytes]:
        """Polite goodbye before the link is closed, if the protocol has one."""
        return None
