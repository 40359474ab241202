"""Consumer dispatch.

Every subscription runs a supervisor thread that keeps one dedicated
connection open to each endpoint carrying the topic, with a reader thread per
connection. Readers decode deliveries and hand them to the subscription's
bounded worker pool, where the application handler runs. The outcome decides
the message's fate:

    handler returns         ack (FIN)
    handler raises          requeue (REQ) with a backoff delay
    deadline passes         stop tracking it; the broker redelivers

Handlers for distinct messages run concurrently, up to max_in_flight; there
is no ordering guarantee between messages.
"""

from __future__ import annotations

import concurrent.futures
import itertools
import logging
import threading
import time
from typing import Callable, Dict, Optional

from .adapter import ACK, REQUEUE, SUBSCRIBE, Failure, Heartbeat, Response
from .errors import (
    EventfulError,
    HandlerError,
    ProtocolError,
    ResolutionFailed,
    TransportError,
    TransportTimeout,
)
from .event import Delivery
from .retry import Backoff

log = logging.getLogger(__name__)

AT_LEAST_ONCE = "at-least-once"
AT_MOST_ONCE = "at-most-once"

POLICIES = {
    AT_LEAST_ONCE: (SUBSCRIBE, ACK, REQUEUE),
    AT_MOST_ONCE: (SUBSCRIBE,),
}

# In-flight message states

RECEIVED = "received"
DISPATCHED = "dispatched"
ACKED = "acked"
REQUEUED = "requeued"
TIMED_OUT = "timed-out"

TERMINAL = frozenset((ACKED, REQUEUED, TIMED_OUT))

_transitions = {
    RECEIVED: frozenset((DISPATCHED, ACKED, REQUEUED, TIMED_OUT)),
    DISPATCHED: frozenset((ACKED, REQUEUED, TIMED_OUT)),
}

# How often supervisors and readers look up from what they're doing.
tick = 0.1


class InFlightMessage:
    """A delivered message while this client is responsible for it.

    Handlers receive one of these. ``history`` lists every state the message
    has been in, starting with ``received``.
    """

    def __init__(self, delivery: Delivery, subscription, connection, ack_timeout: float):
        self.id = delivery.id
        self.event = delivery.event
        self.attempts = delivery.attempts
        self.timestamp = delivery.timestamp
        self.received = time.monotonic()
        self.deadline = self.received + ack_timeout
        self.state = RECEIVED
        self.history = [RECEIVED]
        self.requeue_delay: Optional[float] = None

        self._subscription = subscription
        self._connection = connection
        self._ack_timeout = ack_timeout
        self._lock = threading.Lock()

    def __repr__(self):
        return f"<InFlightMessage {self.id} {self.event.topic!r} {self.state}>"

    @property
    def payload(self) -> bytes:
        return self.event.payload

    @property
    def headers(self):
        return self.event.headers

    @property
    def topic(self) -> str:
        return self.event.topic

    def touch(self) -> None:
        """Ask for more time: push the local and broker deadlines out."""

        data = self._connection.adapter.touch(self.id)
        with self._lock:
            if self.state in TERMINAL:
                return
            self.deadline = time.monotonic() + self._ack_timeout
        self._connection.send(data)

    def _advance(self, state: str) -> bool:
        """Move to *state*. Returns False if the message already reached a
        final state; an impossible transition raises RuntimeError."""

        with self._lock:
            if self.state in TERMINAL:
                return False
            if state not in _transitions[self.state]:
                raise RuntimeError(f"{self!r}: invalid transition to {state}")
            self.state = state
            self.history.append(state)
            return True


class SubscriptionHandle:
    """What :meth:`Dispatcher.subscribe` returns."""

    def __init__(self, subscription):
        self._subscription = subscription

    def __repr__(self):
        return f"<SubscriptionHandle {self.id} active={self.active}>"

    @property
    def id(self) -> str:
        return self._subscription.id

    @property
    def topic(self) -> str:
        return self._subscription.topic

    @property
    def channel(self) -> str:
        return self._subscription.channel

    @property
    def policy(self) -> str:
        return self._subscription.policy

    @property
    def active(self) -> bool:
        return not self._subscription.stopping

    @property
    def in_flight(self) -> int:
        return len(self._subscription.in_flight)

    @property
    def connections(self) -> int:
        return len(self._subscription.live_readers())

    def cancel(self, timeout: Optional[float] = None) -> None:
        self._subscription.dispatcher.unsubscribe(self, timeout)


class _Reader:
    """Reads one subscribed connection until it breaks or is closed."""

    def __init__(self, subscription, endpoint, connection):
        self.subscription = subscription
        self.endpoint = endpoint
        self.connection = connection
        self.ready = 0
        self.thread = threading.Thread(target=self.run, daemon=True,
                                       name=f"eventful.reader.{subscription.name}.{endpoint.address}")

    @property
    def alive(self) -> bool:
        return self.thread.is_alive()

    def set_ready(self, count: int) -> None:
        limit = self.connection.settings.get("max_rdy_count")
        if limit:
            count = min(count, limit)
        if count == self.ready:
            return
        self.connection.send(self.connection.adapter.ready(count))
        self.ready = count

    def run(self) -> None:
        subscription = self.subscription
        adapter = self.connection.adapter

        try:
            while not subscription.stopping:
                try:
                    frame = self.connection.recv(timeout=tick)
                except TransportTimeout:
                    continue

                if isinstance(frame, Delivery):
                    subscription._receive(frame, self.connection)
                elif isinstance(frame, Heartbeat):
                    self.connection.send(adapter.heartbeat())
                elif isinstance(frame, Failure):
                    log.warning("%s: broker error on %s: %s %s", subscription.name,
                                self.endpoint.address, frame.code, frame.text)
                    if not frame.retryable:
                        break
                elif isinstance(frame, Response):
                    if frame.data == b"CLOSE_WAIT":
                        break
                else:
                    log.debug("%s: ignoring %r", subscription.name, frame)

        except (TransportError, ProtocolError) as exc:
            if not subscription.stopping:
                log.warning("%s: lost %s: %s", subscription.name, self.endpoint.address, exc)
                subscription.dispatcher.router.report_failure(self.endpoint)
        except Exception:
            log.exception("%s: reader for %s failed", subscription.name, self.endpoint.address)
        finally:
            # Once stopping, acks still draining need the connection; stop()
            # releases it afterwards.
            if not subscription.stopping:
                subscription.dispatcher.pool.discard(self.connection)


class Subscription:

    _ids = itertools.count(1)

    def __init__(self, dispatcher, topic: str, channel: str, handler: Callable, policy: str,
                 max_in_flight: int):

        self.dispatcher = dispatcher
        self.topic = topic
        self.channel = channel
        self.handler = handler
        self.policy = policy
        self.max_in_flight = max_in_flight

        self.name = f"{topic}/{channel}"
        self.id = f"{self.name}#{next(self._ids)}"

        self.in_flight: Dict[str, InFlightMessage] = {}
        self.stopping = False

        self._lock = threading.Lock()
        self._readers: Dict[tuple, _Reader] = {}
        self._retry_at: Dict[tuple, float] = {}
        self._failures: Dict[tuple, int] = {}
        self._slots = threading.BoundedSemaphore(max_in_flight)
        self._busy = 0
        self._idle = threading.Condition(self._lock)
        self._stop = threading.Event()
        self._workers = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_in_flight, thread_name_prefix=f"eventful.handler.{self.name}")
        self._thread = threading.Thread(target=self.run, daemon=True, name=f"eventful.subscription.{self.name}")

    def __repr__(self):
        return f"<Subscription {self.id} {self.policy}>"

    # --- lifecycle ---

    def start(self) -> None:
        """Make a first connection pass in the caller's thread, so errors
        such as a rejected channel name reach the subscriber directly."""

        try:
            self._connect_all()
        except ProtocolError:
            self.stop(0)
            raise

        self._thread.start()
        log.info("subscribed to %s (%s, max in flight %d)", self.name, self.policy, self.max_in_flight)

    def live_readers(self):
        with self._lock:
            return [reader for reader in self._readers.values() if reader.alive]

    def run(self) -> None:
        period = max(self.dispatcher.lookup_interval, tick)
        next_lookup = time.monotonic() + period

        while not self._stop.wait(tick):
            try:
                self._reap()

                now = time.monotonic()
                if now >= next_lookup or self._has_dead_reader():
                    next_lookup = now + period
                    self._connect_all()
            except ProtocolError as exc:
                log.error("%s: %s", self.name, exc)
            except Exception:
                log.exception("%s: supervisor pass failed", self.name)

    def _has_dead_reader(self) -> bool:
        with self._lock:
            readers = list(self._readers.values())
        return not readers or any(not reader.alive for reader in readers)

    def _connect_all(self) -> None:
        try:
            endpoints = self.dispatcher.router.resolve(self.topic)
        except ResolutionFailed as exc:
            log.warning("%s: %s", self.name, exc)
            return

        changed = False
        now = time.monotonic()

        for endpoint in sorted(endpoints, key=lambda e: e.key):
            with self._lock:
                reader = self._readers.get(endpoint.key)
                if reader is not None and reader.alive:
                    continue
                if reader is not None:
                    del self._readers[endpoint.key]
                    changed = True
                if now < self._retry_at.get(endpoint.key, 0):
                    continue

            if self.stopping:
                return

            try:
                reader = self._open_reader(endpoint)
            except TransportError as exc:
                failures = self._failures.get(endpoint.key, 0) + 1
                self._failures[endpoint.key] = failures
                self._retry_at[endpoint.key] = now + self.dispatcher.reconnect_backoff.delay(failures)
                self.dispatcher.router.report_failure(endpoint)
                log.warning("%s: cannot subscribe on %s: %s", self.name, endpoint.address, exc)
                continue

            self._failures.pop(endpoint.key, None)
            self._retry_at.pop(endpoint.key, None)
            self.dispatcher.router.report_success(endpoint)

            with self._lock:
                if self.stopping:
                    self.dispatcher.pool.discard(reader.connection)
                    return
                self._readers[endpoint.key] = reader
            reader.thread.start()
            changed = True

        if changed:
            self._rebalance()

    def _open_reader(self, endpoint) -> _Reader:
        pool = self.dispatcher.pool
        adapter = pool.adapter
        connection = pool.connect(endpoint)
        connection.topic = self.topic

        try:
            connection.send(adapter.subscribe(self.topic, self.channel))
            deadline = time.monotonic() + pool.connect_timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TransportTimeout(f"{endpoint.address}: no answer to subscribe")
                frame = connection.recv(remaining)
                if isinstance(frame, Heartbeat):
                    connection.send(adapter.heartbeat())
                    continue
                if isinstance(frame, Failure):
                    raise frame.error()
                if isinstance(frame, Response):
                    break
                raise ProtocolError(f"unexpected {type(frame).__name__} before subscribe answer")
        except BaseException:
            pool.invalidate(connection)
            raise

        log.info("%s: reading from %s", self.name, endpoint.address)
        return _Reader(self, endpoint, connection)

    def _rebalance(self) -> None:
        """Spread max_in_flight over the live connections."""

        readers = self.live_readers()
        if not readers:
            return

        count = max(1, self.max_in_flight // len(readers))
        for reader in readers:
            try:
                reader.set_ready(count)
            except TransportError as exc:
                log.debug("%s: cannot update RDY on %s: %s", self.name, reader.endpoint.address, exc)

    # --- message handling ---

    def _receive(self, delivery: Delivery, connection) -> None:
        dispatcher = self.dispatcher
        ack_timeout = dispatcher.ack_timeout
        msg_timeout = connection.settings.get("msg_timeout")
        if msg_timeout:
            ack_timeout = min(ack_timeout, msg_timeout)

        with self._lock:
            if delivery.id in self.in_flight:
                log.warning("%s: %s delivered again while in flight, ignored", self.name, delivery.id)
                return
            message = InFlightMessage(delivery, self, connection, ack_timeout)
            self.in_flight[message.id] = message
            self._busy += 1

        if self.policy == AT_MOST_ONCE:
            self._ack(message)

        # Wait for a free worker; this is what pushes back on the broker
        # when flow control alone isn't enough.

        while not self._slots.acquire(timeout=tick):
            if self.stopping:
                if self.policy == AT_LEAST_ONCE:
                    self._requeue(message, 0)
                self._settle()
                return

        # A message that timed out while waiting was already requeued.
        if self.policy == AT_LEAST_ONCE and not message._advance(DISPATCHED):
            self._release()
            return

        try:
            future = self._workers.submit(self._invoke, message)
        except RuntimeError:
            # The pool shut down underneath us.
            if self.policy == AT_LEAST_ONCE:
                self._requeue(message, 0)
            self._release()
            return

        future.add_done_callback(self._release)

    def _release(self, future=None) -> None:
        self._slots.release()
        self._settle()

    def _settle(self) -> None:
        with self._lock:
            self._busy -= 1
            if self._busy == 0:
                self._idle.notify_all()

    def _invoke(self, message: InFlightMessage) -> None:
        try:
            self.handler(message)
        except Exception as exc:
            error = HandlerError(message.id, self.name, exc)
            if self.policy == AT_LEAST_ONCE:
                delay = self.dispatcher.requeue_backoff.delay(message.attempts)
                log.warning("%s; requeueing with %.2f sec delay", error, delay, exc_info=exc)
                self._requeue(message, delay)
            else:
                log.warning("%s; dropped (at-most-once)", error, exc_info=exc)
        else:
            if self.policy == AT_LEAST_ONCE:
                self._ack(message)

    def _ack(self, message: InFlightMessage) -> None:
        if not message._advance(ACKED):
            log.warning("%s: %s finished after it %s, not acknowledged", self.name, message.id, message.state)
            return

        self._untrack(message)

        # Broker families without acknowledgments consider a message done
        # once it is sent.
        adapter = message._connection.adapter
        if adapter.supports(ACK):
            self._send(message, adapter.ack(message.id))

    def _requeue(self, message: InFlightMessage, delay: float) -> None:
        if not message._advance(REQUEUED):
            return

        message.requeue_delay = delay
        self._untrack(message)
        self._send(message, message._connection.adapter.requeue(message.id, delay))

    def _untrack(self, message: InFlightMessage) -> None:
        with self._lock:
            if self.in_flight.get(message.id) is message:
                del self.in_flight[message.id]

    def _send(self, message: InFlightMessage, data: bytes) -> None:
        try:
            message._connection.send(data)
        except EventfulError as exc:
            # The broker redelivers anything it never heard about.
            log.warning("%s: could not send %s for %s: %s", self.name, message.state, message.id, exc)

    def _reap(self) -> None:
        """Stop tracking messages whose deadline has passed."""

        now = time.monotonic()
        with self._lock:
            expired = [m for m in self.in_flight.values() if m.deadline <= now]

        for message in expired:
            try:
                if not message._advance(TIMED_OUT):
                    continue
            except RuntimeError:
                log.exception("%s: cannot expire %s", self.name, message.id)
                self._untrack(message)
                continue

            self._untrack(message)
            log.warning("%s: %s timed out after %.2f sec", self.name, message.id, now - message.received)

            adapter = message._connection.adapter
            if adapter.supports(REQUEUE):
                self._send(message, adapter.requeue(message.id, 0))

    # --- shutdown ---

    def stop(self, timeout: Optional[float]) -> None:
        """Stop receiving, let running handlers finish for up to *timeout*
        seconds so their acks go out, then close every connection."""

        with self._lock:
            if self.stopping:
                return
            self.stopping = True
            readers = list(self._readers.values())

        self._stop.set()

        for reader in readers:
            if reader.ready:
                try:
                    reader.set_ready(0)
                except TransportError:
                    pass

        with self._lock:
            if not self._idle.wait_for(lambda: self._busy == 0, timeout):
                log.warning("%s: %d message(s) still being handled after drain", self.name, self._busy)

        for reader in readers:
            self.dispatcher.pool.discard(reader.connection)
        for reader in readers:
            if reader.thread.is_alive() and reader.thread is not threading.current_thread():
                reader.thread.join(timeout=1)

        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=1)

        self._workers.shutdown(wait=False)
        log.info("unsubscribed from %s", self.name)


class Dispatcher:
    """Run subscriptions against one adapter, router and pool."""

    def __init__(self, adapter, router, pool, ack_timeout: float = 60.0,
                 requeue_backoff: Optional[Backoff] = None, max_in_flight: int = 1,
                 drain_timeout: float = 5.0, lookup_interval: float = 60.0,
                 reconnect_backoff: Optional[Backoff] = None):

        self.adapter = adapter
        self.router = router
        self.pool = pool
        self.ack_timeout = ack_timeout
        self.requeue_backoff = requeue_backoff or Backoff(1.0, 60.0, 2.0)
        self.max_in_flight = max_in_flight
        self.drain_timeout = drain_timeout
        self.lookup_interval = lookup_interval
        self.reconnect_backoff = reconnect_backoff or Backoff(0.1, 5.0, 2.0)

        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}
        self._closed = False

    def __repr__(self):
        return f"<Dispatcher {self.adapter.name} subscriptions={len(self._subscriptions)}>"

    @property
    def subscriptions(self):
        with self._lock:
            return [SubscriptionHandle(s) for s in self._subscriptions.values()]

    def subscribe(self, topic: str, channel: str, handler: Callable, policy: str = AT_LEAST_ONCE,
                  max_in_flight: Optional[int] = None) -> SubscriptionHandle:
        """Start delivering messages on *topic*/*channel* to *handler*.

        *handler* is called with an :class:`InFlightMessage`. Raises
        UnsupportedCapability if the broker family can't honor *policy*,
        and ValueError for bad names or arguments.
        """

        if self._closed:
            raise RuntimeError("dispatcher is closed")

        try:
            required = POLICIES[policy]
        except KeyError:
            raise ValueError(f"unknown delivery policy: {policy!r}")

        self.adapter.require(*required)
        self.adapter.validate_name(topic)
        self.adapter.validate_name(channel, "channel")

        if not callable(handler):
            raise ValueError("handler must be callable")

        if max_in_flight is None:
            max_in_flight = self.max_in_flight
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")

        subscription = Subscription(self, topic, channel, handler, policy, max_in_flight)
        with self._lock:
            self._subscriptions[subscription.id] = subscription

        try:
            subscription.start()
        except BaseException:
            with self._lock:
                self._subscriptions.pop(subscription.id, None)
            raise

        return SubscriptionHandle(subscription)

    def unsubscribe(self, subscription, timeout: Optional[float] = None) -> None:
        """Cancel a subscription, given its handle or id."""

        key = subscription if isinstance(subscription, str) else subscription.id

        with self._lock:
            found = self._subscriptions.pop(key, None)

        if found is None:
            raise KeyError(f"no such subscription: {key!r}")

        found.stop(self.drain_timeout if timeout is None else timeout)

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop every subscription, sharing one drain deadline between them."""

        if timeout is None:
            timeout = self.drain_timeout

        with self._lock:
            self._closed = True
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()

        deadline = time.monotonic() + timeout
        threads = []
        for subscription in subscriptions:
            remaining = max(deadline - time.monotonic(), 0)
            thread = threading.Thread(target=subscription.stop, args=(remaining,), daemon=True)
            thread.start()
            threads.append(thread)

        for thread in threads:
            thread.join(timeout=max(deadline - time.monotonic(), 0) + 2)
