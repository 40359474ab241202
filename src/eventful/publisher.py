"""Publishing with retry and failover.

Each attempt selects an endpoint through the router, borrows a pooled
connection, sends the adapter's publish command and waits for the broker's
answer. Transport failures mark the endpoint down, ask the router to look the
topic up again, and retry after a backoff delay against whichever endpoint
the router picks next. Every event ends in exactly one :class:`Ack` or one
:class:`PublishError`.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from typing import Optional

from .adapter import PUBLISH, Failure, Heartbeat, Response
from .errors import (
    ConnectionUnavailable,
    ProtocolError,
    PublishError,
    ResolutionFailed,
    TransportError,
    TransportTimeout,
)
from .event import Ack, Event
from .retry import Backoff

log = logging.getLogger(__name__)


class Publisher:
    """Send events through *adapter* using connections from *pool*.

    *attempts* is the total number of tries per event. *ack_timeout* bounds
    the wait for the broker's answer to each try, unless a call passes its
    own timeout. At most *max_pending* :meth:`publish_async` calls are
    outstanding at once; further calls block until one completes.
    """

    def __init__(self, adapter, router, pool, attempts: int = 3, backoff: Optional[Backoff] = None,
                 ack_timeout: float = 60.0, max_pending: int = 64):

        adapter.require(PUBLISH)

        self.adapter = adapter
        self.router = router
        self.pool = pool
        self.attempts = max(1, attempts)
        self.backoff = backoff or Backoff()
        self.ack_timeout = ack_timeout

        self._closed = False
        self._stop = threading.Event()
        self._slots = threading.BoundedSemaphore(max_pending)
        self._futures = set()
        self._futures_lock = threading.Lock()
        self._workers = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, min(max_pending, 16)), thread_name_prefix="eventful.publish")

    def __repr__(self):
        return f"<Publisher {self.adapter.name} attempts={self.attempts}>"

    def publish(self, event: Event, timeout: Optional[float] = None) -> Ack:
        """Publish *event*; return the :class:`Ack` or raise :class:`PublishError`.

        An invalid topic name raises ValueError before anything is sent.
        """

        if self._closed:
            raise RuntimeError("publisher is closed")

        return self._publish(event, timeout)

    def _publish(self, event: Event, timeout: Optional[float]) -> Ack:
        data = self.adapter.encode(event)
        if timeout is None:
            timeout = self.ack_timeout

        last = None
        attempt = 0

        while attempt < self.attempts:
            if self._stop.is_set():
                last = last or "publisher closed"
                break

            attempt += 1

            try:
                endpoint = self.router.select(event.topic)
            except ResolutionFailed as exc:
                raise PublishError(exc, attempt) from exc

            try:
                with self.pool.acquire(endpoint) as connection:
                    self._exchange(connection, data, timeout)
            except ProtocolError as exc:
                last = exc
                if not exc.retryable:
                    raise PublishError(exc, attempt) from exc
            except TransportError as exc:
                last = exc
                if isinstance(exc, ConnectionUnavailable) and self.pool.closed:
                    break
                self.router.report_failure(endpoint)
                self.router.refresh(event.topic)
            else:
                self.router.report_success(endpoint)
                log.debug("published to %r on %s (attempt %d)", event.topic, endpoint.address, attempt)
                return Ack(event, endpoint.address, attempt)

            if attempt < self.attempts:
                log.warning("publish to %r on %s failed (attempt %d/%d): %s",
                            event.topic, endpoint.address, attempt, self.attempts, last)
                if self.backoff.sleep(attempt, stop=self._stop):
                    break

        if isinstance(last, BaseException):
            raise PublishError(last, attempt) from last
        raise PublishError(last, attempt)

    def _exchange(self, connection, data: bytes, timeout: float) -> Response:
        connection.send(data)
        deadline = time.monotonic() + timeout

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransportTimeout(f"{connection.endpoint.address}: no acknowledgment in {timeout:.2f} sec")

            frame = connection.recv(remaining)

            if isinstance(frame, Heartbeat):
                connection.send(self.adapter.heartbeat())
                continue
            if isinstance(frame, Failure):
                raise frame.error()
            if isinstance(frame, Response):
                return frame

            raise ProtocolError(f"unexpected {type(frame).__name__} while waiting for a publish answer")

    def publish_async(self, event: Event, timeout: Optional[float] = None) -> concurrent.futures.Future:
        """Publish in the background; the future yields an Ack or raises PublishError."""

        if self._closed:
            raise RuntimeError("publisher is closed")

        self.adapter.validate_name(event.topic)
        self._slots.acquire()
        try:
            future = self._workers.submit(self._publish, event, timeout)
        except BaseException:
            self._slots.release()
            raise

        with self._futures_lock:
            self._futures.add(future)
        future.add_done_callback(self._done)
        return future

    def _done(self, future) -> None:
        with self._futures_lock:
            self._futures.discard(future)
        self._slots.release()

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop accepting events and wait up to *timeout* for pending ones.

        Publishes still retrying are cut short and end in PublishError.
        """

        if self._closed:
            return
        self._closed = True
        self._stop.set()

        with self._futures_lock:
            pending = list(self._futures)

        if pending:
            done, not_done = concurrent.futures.wait(pending, timeout=timeout)
            if not_done:
                log.warning("%d publish(es) still in progress at close", len(not_done))

        self._workers.shutdown(wait=False)
