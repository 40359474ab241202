""" Topic routing: map a topic name to the broker endpoints that carry it,
    cache the answer, and choose one endpoint at a time for callers that
    need exactly one.

    Cached answers go stale after a time-to-live; a stale answer is still
    returned while a single background thread refreshes it. Refresh
    requests reach that thread through a queue, so resolving callers never
    wait on a lookup unless there is nothing usable in the cache.
"""

import logging
import queue
import threading
import time

from . import discovery
from .errors import ResolutionFailed

log = logging.getLogger(__name__)

UP = 'up'
DOWN = 'down'
UNKNOWN = 'unknown'

DATA = 'data'
DISCOVERY = 'discovery'


class BrokerEndpoint:
    """ One broker node: a data node that carries topics, or a discovery
        node that knows which data nodes do. Instances are shared by every
        component; the health and failure count are only changed through
        :func:`mark_failed` and :func:`mark_up`, which update both fields
        together under the endpoint's lock so concurrent reporters never
        lose an update.

        :ivar url: The configured address, verbatim (it may carry a scheme).
    """

    def __init__(self, host, port, role=DATA, url=None):

        self.host = host
        self.port = int(port)
        self.role = role
        self.url = url

        self._lock = threading.Lock()
        self._health = UNKNOWN
        self._failures = 0
        self._changed = time.monotonic()


    def __repr__(self):
        return '<BrokerEndpoint %s %s %s failures=%d>' % (self.role, self.address, self._health, self._failures)


    def __eq__(self, other):
        if not isinstance(other, BrokerEndpoint):
            return NotImplemented

        return self.key == other.key and self.role == other.role


    def __hash__(self):
        return hash((self.host, self.port, self.role))


    @property
    def key(self):
        return (self.host, self.port)


    @property
    def address(self):
        if ':' in self.host:
            return '[%s]:%d' % (self.host, self.port)
        return '%s:%d' % (self.host, self.port)


    @property
    def health(self):
        return self._health


    @property
    def failures(self):
        return self._failures


    @property
    def weight(self):
        return 1.0 / (1 + self._failures)


    def mark_failed(self):
        with self._lock:
            self._failures += 1
            self._health = DOWN
            self._changed = time.monotonic()
            return self._failures


    def mark_up(self):
        """ A success halves the failure count rather than clearing it, so a
            flapping endpoint stays behind its steadier peers for a while.
        """

        with self._lock:
            self._failures //= 2
            if self._health != UP:
                self._changed = time.monotonic()
            self._health = UP


    def available(self, cooldown):
        """ Return True if this endpoint may be used now. A down endpoint
            becomes eligible again once *cooldown* seconds have passed since
            its last failure.
        """

        with self._lock:
            if self._health != DOWN:
                return True
            return time.monotonic() - self._changed >= cooldown


    @classmethod
    def parse(cls, text, default_port, role=DATA):
        """ Build an endpoint from a 'host:port' string. Discovery addresses
            may also be given as URLs, 'http://host:port/'.
        """

        text = text.strip()
        if text == '':
            raise ValueError('empty endpoint address')

        url = text
        bare = text
        if '://' in bare:
            bare = bare.split('://', 1)[1]
        bare = bare.split('/', 1)[0]

        if bare.startswith('['):
            host, _, rest = bare[1:].partition(']')
            port = rest[1:] if rest.startswith(':') else ''
        elif bare.count(':') == 1:
            host, _, port = bare.partition(':')
        else:
            host = bare
            port = ''

        if host == '':
            raise ValueError('no host in endpoint address: ' + repr(text))

        if port == '':
            port = default_port

        try:
            port = int(port)
        except ValueError:
            raise ValueError('bad port in endpoint address: ' + repr(text))

        return cls(host, port, role, url)


# end of class BrokerEndpoint



class _Entry:

    def __init__(self, endpoints, fetched):
        self.endpoints = endpoints
        self.fetched = fetched


class TopicRouter:
    """ Resolve topics through one or more :class:`eventful.discovery.Discovery`
        sources, merging their answers.

        *ttl* is how long an answer is fresh; *max_stale* is how long a stale
        answer may still be served while it is refreshed in the background.
        *cooldown* is how long a failed endpoint sits out of selection.
    """

    def __init__(self, sources, ttl=60.0, max_stale=300.0, cooldown=0.1):

        self.sources = list(sources)
        self.ttl = float(ttl)
        self.max_stale = max(float(max_stale), self.ttl)
        self.cooldown = float(cooldown)

        self._lock = threading.Lock()
        self._cache = dict()
        self._endpoints = dict()
        self._weights = dict()

        self._requests = queue.Queue()
        self._pending = set()
        self._shutdown = threading.Event()
        self._thread = threading.Thread(target=self.run, name='eventful.router', daemon=True)
        self._thread.start()


    def __repr__(self):
        return '<TopicRouter sources=%r topics=%d>' % (self.sources, len(self._cache))


    def endpoint(self, host, port):
        """ Return the one shared :class:`BrokerEndpoint` for a data node,
            creating it if necessary.
        """

        key = (host, int(port))

        with self._lock:
            try:
                return self._endpoints[key]
            except KeyError:
                endpoint = BrokerEndpoint(host, port, DATA)
                self._endpoints[key] = endpoint
                return endpoint


    def resolve(self, topic):
        """ Return the frozenset of endpoints carrying *topic*. Raises
            :class:`eventful.errors.ResolutionFailed` when no source can
            answer and there's nothing usable in the cache.
        """

        now = time.monotonic()
        entry = self._cache.get(topic)

        if entry is not None:
            age = now - entry.fetched

            if age < self.ttl:
                return entry.endpoints

            if age < self.max_stale:
                self.refresh(topic)
                return entry.endpoints

        return self._lookup(topic)


    def select(self, topic):
        """ Choose one healthy endpoint for *topic*. Endpoints take turns
            (smooth weighted round-robin), each weighted by
            ``1 / (1 + failures)`` so that endpoints failing repeatedly are
            picked less often.
        """

        endpoints = self.resolve(topic)
        candidates = [e for e in endpoints if e.available(self.cooldown)]

        if not candidates:
            raise ResolutionFailed(topic, 'no healthy endpoint among %d' % (len(endpoints)))

        candidates.sort(key=lambda e: e.key)

        with self._lock:
            current = self._weights.setdefault(topic, dict())
            total = 0
            best = None

            for endpoint in candidates:
                weight = endpoint.weight
                total += weight
                current[endpoint.key] = current.get(endpoint.key, 0) + weight

                if best is None or current[endpoint.key] > current[best.key]:
                    best = endpoint

            current[best.key] -= total

        return best


    def report_failure(self, endpoint):
        failures = endpoint.mark_failed()
        log.warning('%s marked down (%d failures)', endpoint.address, failures)


    def report_success(self, endpoint):
        endpoint.mark_up()


    def refresh(self, topic):
        """ Ask the background thread to look *topic* up again. Requests for
            a topic already waiting in the queue are coalesced.
        """

        with self._lock:
            if topic in self._pending or self._shutdown.is_set():
                return
            self._pending.add(topic)

        self._requests.put(topic)


    def _lookup(self, topic):

        found = list()
        errors = list()

        for source in self.sources:
            try:
                pairs = source.lookup(topic)
            except ResolutionFailed as e:
                errors.append(e)
                continue

            for host, port in pairs:
                endpoint = self.endpoint(host, port)
                if endpoint not in found:
                    found.append(endpoint)

        if not found:
            if errors:
                raise errors[-1]
            raise ResolutionFailed(topic, 'no producers known')

        if errors:
            log.warning('partial resolution of %r: %s', topic, errors[-1])

        endpoints = frozenset(found)

        with self._lock:
            entry = self._cache.get(topic)

            # Keep the same set object when nothing changed; callers holding
            # the previous answer then see an identical one.

            if entry is not None and entry.endpoints == endpoints:
                endpoints = entry.endpoints

            self._cache[topic] = _Entry(endpoints, time.monotonic())

        log.debug('resolved %r to %s', topic, sorted(e.address for e in endpoints))
        return endpoints


    def run(self):

        period = max(min(self.ttl / 2, 30.0), 0.05)

        while not self._shutdown.is_set():
            try:
                topic = self._requests.get(timeout=period)
            except queue.Empty:
                self._sweep()
                continue

            if topic is None:
                break

            with self._lock:
                self._pending.discard(topic)

            try:
                self._lookup(topic)
            except ResolutionFailed as e:
                log.warning('background refresh failed, keeping cached answer: %s', e)
            except Exception:
                log.exception('background refresh of %r failed', topic)


    def _sweep(self):
        """ Queue refreshes for entries that have gone stale, and forget
            entries too old to serve at all.
        """

        now = time.monotonic()

        with self._lock:
            entries = list(self._cache.items())

        for topic, entry in entries:
            age = now - entry.fetched

            if age >= self.max_stale:
                with self._lock:
                    if self._cache.get(topic) is entry:
                        del self._cache[topic]
            elif age >= self.ttl:
                self.refresh(topic)


    def close(self):

        if self._shutdown.is_set():
            return

        self._shutdown.set()
        self._requests.put(None)
        self._thread.join(timeout=1)

        for source in self.sources:
            source.stop()


# end of class TopicRouter



def build(static, lookups, ttl=60.0, max_stale=300.0, timeout=5.0, cooldown=0.1, client=None,
          default_port=4150, lookup_port=discovery.lookupd.default_port):
    """ Convenience constructor: *static* are 'host:port' strings for data
        nodes, *lookups* are addresses of discovery nodes.
    """

    sources = list()

    if static:
        pairs = list()
        for text in static:
            endpoint = BrokerEndpoint.parse(text, default_port)
            pairs.append(endpoint.key)
        sources.append(discovery.StaticDiscovery(pairs))

    if lookups:
        endpoints = [BrokerEndpoint.parse(text, lookup_port, DISCOVERY) for text in lookups]
        sources.append(discovery.LookupdDiscovery(endpoints, timeout, client))

    if not sources:
        raise ValueError('at least one endpoint or discovery endpoint is required')

    return TopicRouter(sources, ttl, max_stale, cooldown)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
