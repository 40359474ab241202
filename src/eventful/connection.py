"""Connection pooling.

The :class:`ConnectionManager` owns every link to every broker endpoint.
Publishers borrow a connection for one operation with :meth:`acquire`;
consumer readers hold a dedicated connection from :meth:`connect` for the
life of a subscription. Either way the per-endpoint limits apply.
"""

from __future__ import annotations

import collections
import contextlib
import logging
import threading
import time
from typing import Dict, Iterator, Optional, Tuple

from . import transport
from .errors import (
    ConnectionUnavailable,
    EventfulError,
    ProtocolError,
    TransportError,
)
from .retry import Backoff

log = logging.getLogger(__name__)


class Connection:
    """A live link to one endpoint, speaking one adapter's protocol.

    Writes are serialized by a per-connection lock, so a reader thread and
    any number of ack-sending worker threads can share one connection.
    Reads are expected from a single thread at a time.

    :ivar settings: What the adapter negotiated during the handshake.
    :ivar topic: The subscribed topic, for dedicated consumer connections.
    """

    def __init__(self, endpoint, link, adapter, timeout: Optional[float] = None):
        self.endpoint = endpoint
        self.link = link
        self.adapter = adapter
        self.timeout = timeout
        self.settings: dict = {}
        self.topic: Optional[str] = None
        self.pooled = True
        self.closed = False
        self.created = time.monotonic()
        self.last_used = self.created
        self._write_lock = threading.Lock()

    def __repr__(self):
        return f"<Connection {self.adapter.name} {self.endpoint.address}>"

    def open(self) -> None:
        self.link.open()
        self.settings = self.adapter.negotiate(self)

    def send(self, data: Optional[bytes]) -> None:
        if data is None:
            return
        with self._write_lock:
            self.link.send(data)
        self.last_used = time.monotonic()

    def recv(self, timeout: Optional[float] = None):
        frame = self.link.recv(timeout)
        return self.adapter.decode(frame, self.topic)

    def close(self, polite: bool = True) -> None:
        if self.closed:
            return
        self.closed = True

        if polite and self.link.is_open:
            try:
                self.send(self.adapter.close())
            except EventfulError:
                pass

        self.link.close()


class _Slot:
    """Book-keeping for one endpoint."""

    def __init__(self):
        self.idle = collections.deque()
        self.busy = set()
        self.opening = 0

    @property
    def total(self) -> int:
        return len(self.idle) + len(self.busy) + self.opening


class ConnectionManager:
    """Pool of connections keyed by endpoint.

    *max_idle* connections per endpoint are kept for reuse; at most
    *max_total* exist per endpoint at once, pooled and dedicated together.
    Opening a connection is retried *connect_attempts* times with *backoff*
    between attempts before :class:`~eventful.errors.ConnectionUnavailable`
    is raised.
    """

    def __init__(self, adapter, max_idle: int = 2, max_total: int = 8,
                 connect_timeout: float = 5.0, connect_attempts: int = 3,
                 backoff: Optional[Backoff] = None):

        if max_total < 1:
            raise ValueError("max_total must be at least 1")

        self.adapter = adapter
        self.max_idle = max(0, min(max_idle, max_total))
        self.max_total = max_total
        self.connect_timeout = connect_timeout
        self.connect_attempts = max(1, connect_attempts)
        self.backoff = backoff or Backoff()

        self._cond = threading.Condition()
        self._slots: Dict[Tuple[str, int], _Slot] = {}
        self._closed = False
        self._stopping = threading.Event()

    def __repr__(self):
        return f"<ConnectionManager {self.adapter.name} endpoints={len(self._slots)}>"

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self, endpoint) -> dict:
        with self._cond:
            slot = self._slots.get(endpoint.key)
            if slot is None:
                return {"idle": 0, "busy": 0, "total": 0}
            return {"idle": len(slot.idle), "busy": len(slot.busy), "total": slot.total}

    # --- checkout / return ---

    @contextlib.contextmanager
    def acquire(self, endpoint, timeout: Optional[float] = None) -> Iterator[Connection]:
        """Borrow a connection to *endpoint* for the duration of a with block.

        The connection goes back to the pool when the block exits normally,
        and is invalidated if anything escapes it, since its protocol state
        is then unknown.
        """

        connection = self._checkout(endpoint, timeout, reuse=True)
        try:
            yield connection
        except BaseException:
            self.invalidate(connection)
            raise
        else:
            self._checkin(connection)

    def connect(self, endpoint, timeout: Optional[float] = None) -> Connection:
        """Open a dedicated connection that will never be pooled.

        Release it with :meth:`discard` (or :meth:`invalidate` on error).
        """

        connection = self._checkout(endpoint, timeout, reuse=False)
        connection.pooled = False
        return connection

    def discard(self, connection: Connection) -> None:
        self._forget(connection)
        connection.close()

    def invalidate(self, connection: Connection) -> None:
        """Drop a connection after a transport error; never reuse it."""

        log.debug("invalidating %r", connection)
        self._forget(connection)
        connection.close(polite=False)

    def _forget(self, connection: Connection) -> None:
        with self._cond:
            slot = self._slots.get(connection.endpoint.key)
            if slot is not None:
                slot.busy.discard(connection)
                try:
                    slot.idle.remove(connection)
                except ValueError:
                    pass
            self._cond.notify_all()

    def _checkout(self, endpoint, timeout: Optional[float], reuse: bool) -> Connection:
        if timeout is None:
            timeout = self.connect_timeout
        deadline = time.monotonic() + timeout

        # Closing sends CLS; never while holding the pool lock.
        evicted = []

        try:
            with self._cond:
                while True:
                    if self._closed:
                        raise ConnectionUnavailable("connection pool is closed")

                    slot = self._slots.setdefault(endpoint.key, _Slot())

                    if reuse:
                        while slot.idle:
                            connection = slot.idle.pop()
                            if connection.closed:
                                continue
                            slot.busy.add(connection)
                            return connection

                    if slot.total < self.max_total:
                        slot.opening += 1
                        break

                    # A dedicated connection may evict an idle pooled one.
                    if slot.idle:
                        evicted.append(slot.idle.popleft())
                        continue

                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise ConnectionUnavailable(
                            f"{endpoint.address}: all {self.max_total} connections busy for {timeout:.2f} sec")
                    self._cond.wait(remaining)
        finally:
            for stale in evicted:
                stale.close()

        try:
            connection = self._open(endpoint)
        except BaseException:
            with self._cond:
                slot.opening -= 1
                self._cond.notify_all()
            raise

        with self._cond:
            slot.opening -= 1
            closed = self._closed
            if not closed:
                slot.busy.add(connection)

        if closed:
            connection.close()
            raise ConnectionUnavailable("connection pool is closed")

        return connection

    def _checkin(self, connection: Connection) -> None:
        close = False

        with self._cond:
            slot = self._slots.get(connection.endpoint.key)
            if slot is None or connection not in slot.busy:
                return
            slot.busy.discard(connection)

            if self._closed or connection.closed or len(slot.idle) >= self.max_idle:
                close = True
            else:
                connection.last_used = time.monotonic()
                slot.idle.append(connection)

            self._cond.notify_all()

        if close:
            connection.close()

    def _open(self, endpoint) -> Connection:
        last = None

        for attempt in range(1, self.connect_attempts + 1):
            link = transport.link(self.adapter.transport, endpoint.host, endpoint.port, self.connect_timeout)
            connection = Connection(endpoint, link, self.adapter, self.connect_timeout)

            try:
                connection.open()
            except ProtocolError:
                connection.close(polite=False)
                raise
            except TransportError as exc:
                connection.close(polite=False)
                last = exc
            else:
                log.info("connected to %s (%s)", endpoint.address, self.adapter.name)
                return connection

            if attempt < self.connect_attempts:
                log.warning("connect to %s failed (attempt %d/%d): %s",
                            endpoint.address, attempt, self.connect_attempts, last)
                if self.backoff.sleep(attempt, stop=self._stopping):
                    break

        raise ConnectionUnavailable(
            f"{endpoint.address}: unreachable after {self.connect_attempts} attempt(s): {last}") from last

    # --- shutdown ---

    def close(self) -> None:
        """Close every connection. Later checkouts raise ConnectionUnavailable."""

        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._stopping.set()

            connections = []
            for slot in self._slots.values():
                connections.extend(slot.idle)
                connections.extend(slot.busy)
                slot.idle.clear()
                slot.busy.clear()
            self._cond.notify_all()

        for connection in connections:
            connection.close()

        log.debug("connection pool closed (%d connections)", len(connections))
