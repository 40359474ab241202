import struct

import pytest

import eventful
from eventful import adapter
from eventful.adapter import envelope, nsq
from eventful.errors import ProtocolError, UnsupportedCapability
from eventful.event import Delivery


def test_registry():

    assert isinstance(adapter.get('nsq'), adapter.NsqAdapter)
    assert isinstance(adapter.get('zmq', client_id='me'), adapter.ZmqAdapter)

    with pytest.raises(ValueError):
        adapter.get('kafka')


def test_names():

    nsqa = adapter.get('nsq')

    assert nsqa.validate_name('orders') == 'orders'
    assert nsqa.validate_name('orders.v2_test-1') == 'orders.v2_test-1'
    assert nsqa.validate_name('scratch#ephemeral') == 'scratch#ephemeral'
    assert nsqa.validate_name('x' * 64)

    for bad in ('', 'x' * 65, 'has space', 'slash/topic', 'a#b', None):
        with pytest.raises(ValueError):
            nsqa.validate_name(bad)

    with pytest.raises(ValueError):
        nsqa.encode(eventful.Event('bad topic!', b'x'))

    with pytest.raises(ValueError):
        nsqa.subscribe('orders', 'bad channel')


def test_nsq_commands():

    nsqa = adapter.get('nsq')

    assert nsqa.encode(eventful.Event('orders', b'{"id":1}')) == b'PUB orders\n\x00\x00\x00\x08{"id":1}'
    assert nsqa.subscribe('orders', 'billing') == b'SUB orders billing\n'
    assert nsqa.ready(5) == b'RDY 5\n'
    assert nsqa.ack('0123456789abcdef') == b'FIN 0123456789abcdef\n'
    assert nsqa.requeue('0123456789abcdef', 1.5) == b'REQ 0123456789abcdef 1500\n'
    assert nsqa.requeue('0123456789abcdef') == b'REQ 0123456789abcdef 0\n'
    assert nsqa.touch('0123456789abcdef') == b'TOUCH 0123456789abcdef\n'
    assert nsqa.heartbeat() == b'NOP\n'
    assert nsqa.close() == b'CLS\n'

    identify = nsqa.identify()
    assert identify.startswith(b'IDENTIFY\n')
    body = identify[len(b'IDENTIFY\n') + 4:]
    settings = eventful.json.loads(body)
    assert settings['feature_negotiation'] is True
    assert settings['heartbeat_interval'] == 30000


def test_nsq_decode():

    nsqa = adapter.get('nsq')

    response = nsqa.decode(b'\x00\x00\x00\x00OK')
    assert isinstance(response, adapter.Response)
    assert response.data == b'OK'

    assert isinstance(nsqa.decode(b'\x00\x00\x00\x00_heartbeat_'), adapter.Heartbeat)

    failure = nsqa.decode(b'\x00\x00\x00\x01E_PUB_FAILED PUB failed')
    assert isinstance(failure, adapter.Failure)
    assert failure.code == 'E_PUB_FAILED'
    assert failure.text == 'PUB failed'
    assert failure.retryable

    fatal = nsqa.decode(b'\x00\x00\x00\x01E_BAD_TOPIC PUB topic name "x y" is not valid')
    assert not fatal.retryable
    error = fatal.error()
    assert isinstance(error, ProtocolError)
    assert error.code == 'E_BAD_TOPIC'

    frame = nsq.message_frame('0123456789abcdef', b'hello', attempts=3, timestamp=1500000000 * 10**9)
    delivery = nsqa.decode(frame, 'orders')
    assert isinstance(delivery, Delivery)
    assert delivery.id == '0123456789abcdef'
    assert delivery.attempts == 3
    assert delivery.timestamp == 1500000000.0
    assert delivery.event == eventful.Event('orders', b'hello')

    with pytest.raises(ProtocolError):
        nsqa.decode(frame)

    with pytest.raises(ProtocolError):
        nsqa.decode(b'\x00\x00')

    with pytest.raises(ProtocolError):
        nsqa.decode(b'\x00\x00\x00\x07whatever')

    with pytest.raises(ProtocolError):
        nsqa.decode(b'\x00\x00\x00\x02short', 'orders')

    garbled = b'\x00\x00\x00\x02' + struct.pack('>qH', 0, 1) + b'\xad' * 16 + b'body'
    with pytest.raises(ProtocolError):
        nsqa.decode(garbled, 'orders')

    with pytest.raises(ValueError):
        nsq.message_frame('short', b'')


def test_nsq_round_trip():

    nsqa = adapter.get('nsq')
    event = eventful.Event('orders', b'{"id":1}', {'trace': 'abc', 'tenant': 'x'})

    assert nsqa.unpack(nsqa.pack(event), event.topic) == event

    # nsqd stores the PUB body and hands it back inside a message frame.
    command = nsqa.encode(event)
    body = command[len(b'PUB orders\n') + 4:]
    delivery = nsqa.decode(nsq.message_frame('0000000000000001', body), 'orders')
    assert delivery.event == event


def test_zmq():

    zmqa = adapter.get('zmq', client_id='tester')

    assert not zmqa.supports(adapter.ACK)
    assert zmqa.supports(adapter.PUBLISH)

    with pytest.raises(UnsupportedCapability):
        zmqa.require(adapter.SUBSCRIBE, adapter.ACK)

    with pytest.raises(UnsupportedCapability):
        zmqa.ack('0001')

    with pytest.raises(UnsupportedCapability):
        zmqa.requeue('0001', 1)

    assert zmqa.ready(10) is None
    assert zmqa.touch('0001') is None

    event = eventful.Event('orders', b'\x00binary\n\npayload', {'trace': 'abc'})
    assert zmqa.decode(zmqa.encode(event)) == event
    assert zmqa.unpack(zmqa.pack(event), event.topic) == event

    assert isinstance(zmqa.decode(envelope.pack_frame({'type': 'PING'})), adapter.Heartbeat)
    assert isinstance(zmqa.decode(envelope.pack_frame({'type': 'OK'})), adapter.Response)

    failure = zmqa.decode(envelope.pack_frame({'type': 'ERR', 'code': 'E_FULL', 'retryable': True}))
    assert failure.code == 'E_FULL'
    assert failure.retryable

    header = {'type': 'MSG', 'topic': 'orders', 'id': 'm1', 'attempts': 2, 'time': 12.5}
    delivery = zmqa.decode(envelope.pack_frame(header, b'body'))
    assert delivery.id == 'm1'
    assert delivery.attempts == 2
    assert delivery.event == eventful.Event('orders', b'body')

    with pytest.raises(ProtocolError):
        zmqa.decode(envelope.pack_frame({'type': 'WHAT'}))

    with pytest.raises(ProtocolError):
        zmqa.decode(b'\xff\xfe')

    for bad in ({'attempts': 'many'}, {'time': 'noon'}, {'attempts': [1]}):
        with pytest.raises(ProtocolError):
            zmqa.decode(envelope.pack_frame(dict(header, **bad), b'body'))


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
