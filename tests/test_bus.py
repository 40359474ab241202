import threading

import pytest

import eventful
from eventful.connection import ConnectionManager

from fakensqd import wait_for


class Click(eventful.Record):
    topic = 'clicks'

    user: str
    x: int
    y: int


def test_context_manager(nsqd, configure):

    with eventful.Bus(configure(endpoints=[nsqd.address])) as bus:
        assert not bus.closed
        bus.publish('orders', b'{"id":1}')

    assert bus.closed

    # Closing again is harmless; anything else is an error.
    bus.close()

    with pytest.raises(RuntimeError):
        bus.publish('orders', b'{"id":2}')

    with pytest.raises(RuntimeError):
        bus.subscribe('orders', 'billing', print)

    with pytest.raises(RuntimeError):
        bus.emit(Click('alice', 1, 2))

    repr(bus)


def test_close_releases_connections(nsqd, configure):

    bus = eventful.Bus(configure(endpoints=[nsqd.address]))
    bus.subscribe('orders', 'billing', print)
    bus.publish('orders', b'{"id":1}')

    wait_for(lambda: len(nsqd.clients) == 2)
    bus.close()

    wait_for(lambda: len(nsqd.clients) == 0)
    assert bus.pool.closed


def test_publish_event(bus, nsqd):

    event = eventful.Event('orders', b'{"id":1}')
    ack = bus.publish(event)
    assert ack.event is event

    future = bus.publish_async('orders', '{"id":2}')
    assert future.result(timeout=5).event.payload == b'{"id":2}'


def test_records(bus, nsqd):

    received = list()
    done = threading.Event()

    def handler(record, message):
        received.append((record, message))
        done.set()

    handle = bus.consume(Click, 'analytics', handler)
    assert handle.topic == 'clicks'

    ack = bus.emit(Click('alice', 10, 20))
    assert ack.event.topic == 'clicks'

    assert done.wait(5)
    record, message = received[0]
    assert record == Click('alice', 10, 20)
    assert message.payload == ack.event.payload


def test_undecodable_record(bus, nsqd):

    calls = list()
    bus.consume(Click, 'analytics', lambda record, message: calls.append(record))

    # Not a Click at all: the handler never sees it, and it is requeued.
    bus.publish('clicks', b'{"user": "bob"}')

    wait_for(lambda: nsqd.requeued)
    assert calls == []


def test_shared_pool(nsqd, configure):

    settings = configure(endpoints=[nsqd.address])
    adapter = eventful.adapter.get('nsq', client_id='shared')
    pool = ConnectionManager(adapter)

    try:
        with eventful.Bus(settings, pool=pool) as bus:
            assert bus.adapter is adapter
            bus.publish('orders', b'{"id":1}')

        # The pool belongs to the caller and outlives the bus.
        assert not pool.closed

        with pytest.raises(ValueError):
            eventful.Bus(settings, adapter=eventful.adapter.get('nsq'), pool=pool)
    finally:
        pool.close()


def test_dict_config(nsqd):

    with eventful.Bus({'endpoints': [nsqd.address], 'maxInFlight': 2}) as bus:
        assert bus.config.max_in_flight == 2
        assert bus.dispatcher.max_in_flight == 2


def test_lookupd_config(nsqd):

    import httpx

    def lookupd(request):
        producer = {'broadcast_address': nsqd.host, 'tcp_port': nsqd.port}
        return httpx.Response(200, json={'producers': [producer]})

    client = httpx.Client(transport=httpx.MockTransport(lookupd))
    settings = eventful.Configuration(discoveryEndpoints=['http://lookup:4161'], client_id='pytest')

    with eventful.Bus(settings, discovery_client=client) as bus:
        ack = bus.publish('orders', b'{"id":1}')
        assert ack.endpoint == nsqd.address


def test_no_endpoints():

    with pytest.raises(ValueError):
        eventful.Bus(eventful.Configuration())


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
