"""Plain TCP link with size-prefixed inbound frames.

Inbound:    4-byte big-endian size, then that many bytes of frame
Outbound:   raw bytes, framed by the adapter
"""

from __future__ import annotations

import socket
import struct
import threading
import time
from typing import Optional

from ..errors import ProtocolError, TransportConnectionError, TransportTimeout
from .base import Link as BaseLink

_SIZE = struct.Struct(">l")

# Anything larger is certainly a desynchronized stream, not a real frame.
maximum_frame = 64 * 1024 * 1024


class Link(BaseLink):

    def __init__(self, host: str, port: int, timeout: Optional[float] = None):
        super().__init__(host, port, timeout)
        self.socket: Optional[socket.socket] = None
        self._buffer = bytearray()
        self._send_lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self.socket is not None

    def open(self) -> None:
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as exc:
            raise TransportConnectionError(f"{self.host}:{self.port}: {exc}") from exc

        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self.socket = sock

    def close(self) -> None:
        sock = self.socket
        self.socket = None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()

    def send(self, data: bytes) -> None:
        sock = self.socket
        if sock is None:
            raise TransportConnectionError(f"{self.host}:{self.port}: link is closed")

        with self._send_lock:
            try:
                sock.sendall(data)
            except socket.timeout as exc:
                raise TransportTimeout(f"{self.host}:{self.port}: send timed out") from exc
            except OSError as exc:
                raise TransportConnectionError(f"{self.host}:{self.port}: {exc}") from exc

    def _take(self) -> Optional[bytes]:
        """Pop one complete frame off the receive buffer, if there is one."""

        if len(self._buffer) < _SIZE.size:
            return None

        size = _SIZE.unpack_from(self._buffer)[0]
        if size < 0 or size > maximum_frame:
            raise ProtocolError(f"{self.host}:{self.port}: impossible frame size {size}")

        end = _SIZE.size + size
        if len(self._buffer) < end:
            return None

        frame = bytes(self._buffer[_SIZE.size:end])
        del self._buffer[:end]
        return frame

    def recv(self, timeout: Optional[float] = None) -> bytes:
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            frame = self._take()
            if frame is not None:
                return frame

            sock = self.socket
            if sock is None:
                raise TransportConnectionError(f"{self.host}:{self.port}: link is closed")

            if deadline is None:
                sock.settimeout(None)
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TransportTimeout(f"{self.host}:{self.port}: no frame in {timeout:.2f} sec")
                sock.settimeout(remaining)

            try:
                chunk = sock.recv(65536)
            except socket.timeout:
                continue
            except OSError as exc:
                raise TransportConnectionError(f"{self.host}:{self.port}: {exc}") from exc

            if not chunk:
                raise TransportConnectionError(f"{self.host}:{self.port}: connection closed by peer")

            self._buffer += chunk
