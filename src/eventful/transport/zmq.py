"""ZeroMQ DEALER link. One ZeroMQ message is one frame."""

from __future__ import annotations

import atexit
import threading
import time
import uuid
from typing import Optional

import zmq

from ..errors import TransportConnectionError, TransportTimeout
from .base import Link as BaseLink

zmq_context = zmq.Context()

# ZeroMQ sockets are not thread-safe; every socket call is made holding the
# link's lock, and receives poll in slices this long so senders get a turn.
poll_slice = 0.05


class Link(BaseLink):

    def __init__(self, host: str, port: int, timeout: Optional[float] = None):
        super().__init__(host, port, timeout)
        self.socket = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self.socket is not None

    def open(self) -> None:
        server = f"tcp://{self.host}:{self.port}"
        identity = f"eventful.{uuid.uuid4().hex}".encode()

        sock = zmq_context.socket(zmq.DEALER)
        sock.setsockopt(zmq.LINGER, 0)
        sock.setsockopt(zmq.IMMEDIATE, 1)
        if self.timeout is not None:
            sock.setsockopt(zmq.SNDTIMEO, int(self.timeout * 1000))
        sock.identity = identity

        try:
            sock.connect(server)
        except zmq.ZMQError as exc:
            sock.close()
            raise TransportConnectionError(f"{server}: {exc}") from exc

        self.socket = sock

    def close(self) -> None:
        with self._lock:
            sock = self.socket
            self.socket = None
            if sock is not None:
                sock.close()

    def send(self, data: bytes) -> None:
        with self._lock:
            if self.socket is None:
                raise TransportConnectionError(f"{self.host}:{self.port}: link is closed")
            try:
                self.socket.send(data)
            except zmq.Again as exc:
                # With IMMEDIATE set, a send only stalls when no broker is
                # connected at all.
                raise TransportConnectionError(f"{self.host}:{self.port}: broker not reachable") from exc
            except zmq.ZMQError as exc:
                raise TransportConnectionError(f"{self.host}:{self.port}: {exc}") from exc

    def recv(self, timeout: Optional[float] = None) -> bytes:
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            wait = poll_slice
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TransportTimeout(f"{self.host}:{self.port}: no frame in {timeout:.2f} sec")
                wait = min(wait, remaining)

            with self._lock:
                if self.socket is None:
                    raise TransportConnectionError(f"{self.host}:{self.port}: link is closed")
                try:
                    if self.socket.poll(int(wait * 1000), zmq.POLLIN):
                        return self.socket.recv(zmq.NOBLOCK)
                except zmq.ZMQError as exc:
                    raise TransportConnectionError(f"{self.host}:{self.port}: {exc}") from exc


def _cleanup() -> None:
    # Links owned by daemon threads may never be closed; term() would wait
    # on them forever.
    zmq_context.destroy(linger=0)


atexit.register(_cleanup)
