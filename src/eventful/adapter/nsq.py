"""NSQ TCP protocol (V2).

Client to nsqd:
    magic           b'  V2', once, right after connecting
    commands        VERB [params...]\\n [4-byte size, body]

nsqd to client, after the connection layer strips the 4-byte size:
    frame type      4 bytes, big-endian: 0 response, 1 error, 2 message
    data            response/error text, or a message:
                    timestamp (int64 ns), attempts (uint16),
                    id (16 ASCII bytes), body
"""

from __future__ import annotations

import logging
import socket
import struct
from typing import Optional

from .. import __version__
from .. import json
from ..errors import ProtocolError
from ..event import Delivery, Event
from .base import (
    ACK, HEARTBEAT, PUBLISH, REQUEUE, SUBSCRIBE,
    Adapter, Failure, Heartbeat, Response,
)

log = logging.getLogger(__name__)

MAGIC_V2 = b"  V2"

FRAME_RESPONSE = 0
FRAME_ERROR = 1
FRAME_MESSAGE = 2

HEARTBEAT_DATA = b"_heartbeat_"

_MESSAGE_HEADER = struct.Struct(">qH16s")
_SIZE = struct.Struct(">l")

# Error codes that leave the connection usable; the command may be retried.
NON_FATAL = frozenset((
    "E_FIN_FAILED",
    "E_MPUB_FAILED",
    "E_PUB_FAILED",
    "E_REQ_FAILED",
    "E_TOUCH_FAILED",
))

default_port = 4150


class NsqAdapter(Adapter):

    name = "nsq"
    transport = "tcp"
    default_port = default_port
    capabilities = frozenset((PUBLISH, SUBSCRIBE, ACK, REQUEUE, HEARTBEAT))

    def __init__(self, client_id: Optional[str] = None, heartbeat_interval: float = 30.0,
                 msg_timeout: Optional[float] = None):
        self.client_id = client_id or socket.gethostname().split(".")[0]
        self.heartbeat_interval = heartbeat_interval
        self.msg_timeout = msg_timeout

    # --- handshake ---

    def identify(self) -> bytes:
        body = {
            "client_id": self.client_id,
            "hostname": socket.getfqdn(),
            "user_agent": f"eventful/{__version__}",
            "feature_negotiation": True,
            "heartbeat_interval": int(self.heartbeat_interval * 1000),
        }
        if self.msg_timeout is not None:
            body["msg_timeout"] = int(self.msg_timeout * 1000)
        return self._command(b"IDENTIFY", body=json.dumps(body))

    def negotiate(self, connection) -> dict:
        connection.send(MAGIC_V2 + self.identify())

        while True:
            frame = connection.recv(timeout=connection.timeout)
            if isinstance(frame, Heartbeat):
                connection.send(self.heartbeat())
                continue
            break

        if isinstance(frame, Failure):
            raise frame.error()
        if not isinstance(frame, Response):
            raise ProtocolError(f"unexpected IDENTIFY answer: {frame!r}")

        settings = {
            "max_rdy_count": 2500,
            "msg_timeout": 60.0,
            "heartbeat_interval": self.heartbeat_interval,
        }

        # Older nsqd answer a plain OK when they don't do feature negotiation.
        if frame.data == b"OK":
            return settings

        try:
            answer = json.loads(frame.data)
        except ValueError as exc:
            raise ProtocolError(f"malformed IDENTIFY answer: {frame.data!r}") from exc

        if "max_rdy_count" in answer:
            settings["max_rdy_count"] = int(answer["max_rdy_count"])
        if "msg_timeout" in answer:
            settings["msg_timeout"] = answer["msg_timeout"] / 1000.0
        settings["version"] = answer.get("version")

        log.debug("%s negotiated %r", connection, settings)
        return settings

    # --- outbound ---

    def _command(self, verb: bytes, *params, body: Optional[bytes] = None) -> bytes:
        line = b" ".join((verb,) + tuple(p if isinstance(p, bytes) else str(p).encode() for p in params))
        line += b"\n"
        if body is not None:
            line += _SIZE.pack(len(body)) + body
        return line

    def encode(self, event: Event) -> bytes:
        self.validate_name(event.topic)
        return self._command(b"PUB", event.topic, body=self.pack(event))

    def subscribe(self, topic: str, channel: str) -> bytes:
        self.validate_name(topic)
        self.validate_name(channel, "channel")
        return self._command(b"SUB", topic, channel)

    def ready(self, count: int) -> bytes:
        return self._command(b"RDY", int(count))

    def ack(self, message_id: str) -> bytes:
        return self._command(b"FIN", message_id)

    def requeue(self, message_id: str, delay: float = 0) -> bytes:
        return self._command(b"REQ", message_id, max(int(delay * 1000), 0))

    def touch(self, message_id: str) -> bytes:
        return self._command(b"TOUCH", message_id)

    def heartbeat(self) -> bytes:
        return self._command(b"NOP")

    def close(self) -> bytes:
        return self._command(b"CLS")

    # --- inbound ---

    def decode(self, frame: bytes, topic: Optional[str] = None):
        if len(frame) < 4:
            raise ProtocolError(f"short frame ({len(frame)} bytes)")

        frame_type = int.from_bytes(frame[:4], "big")
        data = frame[4:]

        if frame_type == FRAME_RESPONSE:
            if data == HEARTBEAT_DATA:
                return Heartbeat()
            return Response(data)

        if frame_type == FRAME_ERROR:
            code, _, text = data.decode("utf-8", "replace").partition(" ")
            return Failure(code, text, retryable=code in NON_FATAL)

        if frame_type == FRAME_MESSAGE:
            if len(data) < _MESSAGE_HEADER.size:
                raise ProtocolError(f"short message frame ({len(data)} bytes)")
            if not topic:
                raise ProtocolError("message frame on a connection with no subscription")

            timestamp, attempts, message_id = _MESSAGE_HEADER.unpack_from(data)
            body = data[_MESSAGE_HEADER.size:]
            try:
                message_id = message_id.decode("ascii")
            except UnicodeDecodeError as exc:
                raise ProtocolError(f"message id is not ASCII: {message_id!r}") from exc

            event = self.unpack(body, topic)
            return Delivery(message_id, attempts, timestamp / 1e9, event)

        raise ProtocolError(f"unknown frame type {frame_type}")


def message_frame(message_id: str, body: bytes, attempts: int = 1, timestamp: int = 0) -> bytes:
    """Build the frame nsqd sends for a message, minus the size prefix."""

    message_id = message_id.encode("ascii")
    if len(message_id) != 16:
        raise ValueError("NSQ message ids are exactly 16 bytes")

    header = _MESSAGE_HEADER.pack(timestamp, attempts, message_id)
    return FRAME_MESSAGE.to_bytes(4, "big") + header + body
