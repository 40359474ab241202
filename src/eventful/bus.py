"""The Bus facade.

Application code publishes and subscribes through a :class:`Bus`; which
broker family sits underneath is a configuration choice. The bus composes
the other components and keeps no state of its own beyond them.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from . import adapter as adapters
from . import router as routing
from .config import Configuration
from .connection import ConnectionManager
from .consumer import AT_LEAST_ONCE, Dispatcher, SubscriptionHandle
from .event import Ack, Event
from .publisher import Publisher

log = logging.getLogger(__name__)


class Bus:
    """Publish and subscribe against the brokers described by *config*.

    *config* is a :class:`~eventful.config.Configuration`, a dict of
    options, or None to load one from the environment. An adapter, a
    connection pool and a router may be passed in instead of being built
    from the configuration; the bus only closes the ones it built.
    """

    def __init__(self, config=None, *, adapter=None, pool: Optional[ConnectionManager] = None,
                 router: Optional[routing.TopicRouter] = None, discovery_client=None):

        if config is None:
            config = Configuration.load()
        elif isinstance(config, dict):
            config = Configuration(**config)
        self.config = config

        if adapter is None and pool is not None:
            adapter = pool.adapter
        if adapter is None:
            adapter = adapters.get(config.adapter, **config.adapter_options())
        elif isinstance(adapter, str):
            adapter = adapters.get(adapter)
        self.adapter = adapter

        if pool is not None and pool.adapter is not adapter:
            raise ValueError("the connection pool speaks a different adapter than the bus")

        self._owned = []

        if router is None:
            router = routing.build(
                config.endpoints, config.discovery_endpoints,
                ttl=config.lookup_ttl,
                max_stale=config.lookup_max_stale,
                timeout=config.lookup_timeout,
                cooldown=config.health_cooldown,
                client=discovery_client,
                default_port=adapter.default_port,
            )
            self._owned.append(router)
        self.router = router

        if pool is None:
            pool = ConnectionManager(
                adapter,
                max_idle=config.max_idle,
                max_total=config.max_total,
                connect_timeout=config.connect_timeout,
                connect_attempts=config.connect_attempts,
                backoff=config.retry_backoff,
            )
            self._owned.append(pool)
        self.pool = pool

        self.publisher = Publisher(
            adapter, router, pool,
            attempts=config.publish_attempts,
            backoff=config.retry_backoff,
            ack_timeout=config.ack_timeout,
            max_pending=config.max_pending,
        )

        self.dispatcher = Dispatcher(
            adapter, router, pool,
            ack_timeout=config.ack_timeout,
            requeue_backoff=config.requeue_backoff,
            max_in_flight=config.max_in_flight,
            drain_timeout=config.drain_timeout,
            lookup_interval=config.lookup_ttl,
            reconnect_backoff=config.retry_backoff,
        )

        self._closed = False
        self._close_lock = threading.Lock()

        log.info("bus ready (%s)", adapter.name)

    def __repr__(self):
        state = "closed" if self._closed else "open"
        return f"<Bus {self.adapter.name} {state}>"

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def _check(self) -> None:
        if self._closed:
            raise RuntimeError("bus is closed")

    # --- publishing ---

    def publish(self, topic, payload=b"", headers=None, timeout: Optional[float] = None) -> Ack:
        """Publish one event and wait for the broker's acknowledgment.

        *topic* may also be a ready-made :class:`~eventful.Event`, in which
        case *payload* and *headers* are ignored. Raises PublishError when
        every attempt fails.
        """

        self._check()
        return self.publisher.publish(self._event(topic, payload, headers), timeout)

    def publish_async(self, topic, payload=b"", headers=None, timeout: Optional[float] = None):
        """Like :meth:`publish`, but return a future resolving to the Ack."""

        self._check()
        return self.publisher.publish_async(self._event(topic, payload, headers), timeout)

    def emit(self, record, headers=None, timeout: Optional[float] = None) -> Ack:
        """Publish a :class:`~eventful.record.Record` on its topic."""

        self._check()
        return self.publisher.publish(record.to_event(headers), timeout)

    @staticmethod
    def _event(topic, payload, headers) -> Event:
        if isinstance(topic, Event):
            return topic
        return Event(topic, payload, headers or {})

    # --- consuming ---

    def subscribe(self, topic: str, channel: str, handler: Callable, policy: str = AT_LEAST_ONCE,
                  max_in_flight: Optional[int] = None) -> SubscriptionHandle:
        self._check()
        return self.dispatcher.subscribe(topic, channel, handler, policy, max_in_flight)

    def consume(self, record_type, channel: str, handler: Callable, policy: str = AT_LEAST_ONCE,
                max_in_flight: Optional[int] = None) -> SubscriptionHandle:
        """Subscribe to the topic of *record_type*; *handler* is called as
        ``handler(record, message)``. A payload that does not decode counts
        as a handler failure.
        """

        if not record_type.topic:
            raise ValueError(f"{record_type.__name__} has no topic")

        def deliver(message):
            handler(record_type.from_event(message.event), message)

        return self.subscribe(record_type.topic, channel, deliver, policy, max_in_flight)

    def unsubscribe(self, subscription, timeout: Optional[float] = None) -> None:
        self._check()
        self.dispatcher.unsubscribe(subscription, timeout)

    # --- shutdown ---

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop consuming, let in-flight acknowledgments drain for up to
        *timeout* seconds (the configured drain timeout by default), then
        release every connection. Calling it again does nothing.
        """

        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        if timeout is None:
            timeout = self.config.drain_timeout

        self.dispatcher.close(timeout)
        self.publisher.close(timeout)

        for component in self._owned:
            component.close()

        log.info("bus closed")
