"""ZeroMQ broker protocol.

Every frame is a single ZeroMQ message laid out by :mod:`.envelope`: a
compact JSON header, then the raw payload when there is one. The header
``type`` is one of:

    HELLO   client -> broker, handshake; answered with OK
    PUB     client -> broker, publish; answered with OK or ERR
    SUB     client -> broker, start receiving MSG frames; answered with OK
    MSG     broker -> client, a delivered message
    PING    broker -> client, heartbeat; answered with PONG
    BYE     client -> broker, goodbye

The broker family has no per-message acknowledgment: delivery is
at-most-once.
"""

from __future__ import annotations

import socket
import time
from typing import Optional

from ..errors import ProtocolError
from ..event import Delivery, Event
from .base import HEARTBEAT, PUBLISH, SUBSCRIBE, Adapter, Failure, Heartbeat, Response
from .envelope import pack_frame, unpack_frame

default_port = 5570


class ZmqAdapter(Adapter):

    name = "zmq"
    transport = "zmq"
    default_port = default_port
    capabilities = frozenset((PUBLISH, SUBSCRIBE, HEARTBEAT))

    def __init__(self, client_id: Optional[str] = None):
        self.client_id = client_id or socket.gethostname().split(".")[0]

    def negotiate(self, connection) -> dict:
        connection.send(pack_frame({"type": "HELLO", "client_id": self.client_id}))
        frame = connection.recv(timeout=connection.timeout)

        if isinstance(frame, Failure):
            raise frame.error()
        if not isinstance(frame, Response):
            raise ProtocolError(f"unexpected HELLO answer: {frame!r}")
        return {}

    def encode(self, event: Event) -> bytes:
        self.validate_name(event.topic)
        header = {"type": "PUB", "topic": event.topic}
        if event.headers:
            header["headers"] = dict(event.headers)
        return pack_frame(header, event.payload)

    def subscribe(self, topic: str, channel: str) -> bytes:
        self.validate_name(topic)
        self.validate_name(channel, "channel")
        return pack_frame({"type": "SUB", "topic": topic, "channel": channel})

    def heartbeat(self) -> bytes:
        return pack_frame({"type": "PONG"})

    def close(self) -> bytes:
        return pack_frame({"type": "BYE"})

    def decode(self, frame: bytes, topic: Optional[str] = None):
        header, payload = unpack_frame(frame)
        kind = header.get("type")

        if kind == "OK":
            return Response(payload or b"", header.get("id"))

        if kind == "ERR":
            return Failure(header.get("code", "E_UNKNOWN"), header.get("text", ""),
                           retryable=bool(header.get("retryable", False)), id=header.get("id"))

        if kind == "PING":
            return Heartbeat()

        if kind in ("PUB", "MSG"):
            try:
                event = Event(header.get("topic") or topic or "", payload or b"", header.get("headers") or {})
            except (TypeError, ValueError) as exc:
                raise ProtocolError(f"bad {kind} frame: {exc}") from exc

            if kind == "PUB":
                return event

            try:
                attempts = int(header.get("attempts", 1))
                timestamp = float(header.get("time", time.time()))
            except (TypeError, ValueError) as exc:
                raise ProtocolError(f"bad MSG frame: {exc}") from exc

            return Delivery(str(header.get("id", "")), attempts, timestamp, event)

        raise ProtocolError(f"unknown frame type {kind!r}")
