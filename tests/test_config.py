import pytest

import eventful
from eventful import config
from eventful.retry import Backoff


def test_defaults():

    settings = eventful.Configuration()

    assert settings.adapter == 'nsq'
    assert settings.endpoints == ()
    assert settings.max_in_flight == 1
    assert settings.ack_timeout == 60.0
    assert settings.publish_attempts == 3
    assert settings.retry_backoff == Backoff(0.1, 5.0, 2.0)
    assert settings.requeue_backoff == Backoff(1.0, 60.0, 2.0)
    assert settings.max_idle == 2
    assert settings.max_total == 8
    assert settings.lookup_ttl == 60.0
    assert settings.client_id

    assert set(settings.as_dict()) == set(config.defaults)
    repr(settings)


def test_names_and_values():

    settings = eventful.Configuration(maxInFlight=4, ackTimeout='250ms', lookup_max_stale='2m',
                                      endpoints='a:1, b:2', discoveryEndpoints=['http://lookup:4161'])

    assert settings.max_in_flight == 4
    assert settings.ack_timeout == 0.25
    assert settings.lookup_max_stale == 120.0
    assert settings.endpoints == ('a:1', 'b:2')
    assert settings.discovery_endpoints == ('http://lookup:4161',)

    assert config.normalize('healthCooldown') == 'health_cooldown'
    assert config.normalize('max_in_flight') == 'max_in_flight'

    assert config.duration(5) == 5.0
    assert config.duration('1.5s') == 1.5
    assert config.duration('1h') == 3600.0
    assert config.duration('20') == 20.0

    for bad in ('soon', '-1s', -1, True, '5 days'):
        with pytest.raises(ValueError):
            config.duration(bad)


def test_backoff_values():

    settings = eventful.Configuration(retryBackoff={'initial': '100ms', 'max': '5s', 'multiplier': 2},
                                      requeue_backoff='1s,1m,3')

    assert settings.retry_backoff == Backoff(0.1, 5.0, 2.0)
    assert settings.requeue_backoff == Backoff(1.0, 60.0, 3.0)

    # Missing fields take the usual defaults.
    assert config.backoff({'initial': 1}) == Backoff(1.0, 5.0, 2.0)

    with pytest.raises(ValueError):
        config.backoff('1s,2s')

    with pytest.raises(ValueError):
        config.backoff({'initial': 1, 'jitter': 0.5})

    with pytest.raises(ValueError):
        config.backoff(7)


def test_errors():

    with pytest.raises(ValueError) as caught:
        eventful.Configuration(maxInflight=3)
    assert 'maxInflight' in str(caught.value)

    with pytest.raises(ValueError) as caught:
        eventful.Configuration(max_in_flight=0)
    assert 'max_in_flight' in str(caught.value)

    with pytest.raises(ValueError) as caught:
        eventful.Configuration(ackTimeout='whenever')
    assert 'ackTimeout' in str(caught.value)

    with pytest.raises(ValueError):
        eventful.Configuration(publish_attempts='many')

    with pytest.raises(ValueError):
        eventful.Configuration(max_total=True)

    # Zero idle connections is fine; zero total is not.
    assert eventful.Configuration(max_idle=0).max_idle == 0

    with pytest.raises(ValueError):
        eventful.Configuration(max_total=0)


def test_load(tmp_path):

    path = tmp_path / 'eventful.json'
    path.write_text('{"maxInFlight": 3, "lookupTtl": "10s", "adapter": "zmq"}')

    settings = eventful.Configuration.load(path, environ={})
    assert settings.max_in_flight == 3
    assert settings.lookup_ttl == 10.0
    assert settings.adapter == 'zmq'

    # The environment beats the file, keyword arguments beat both.

    environ = dict()
    environ['EVENTFUL_CONFIG'] = str(path)
    environ['EVENTFUL_MAX_IN_FLIGHT'] = '5'
    environ['EVENTFUL_ENDPOINTS'] = 'h1:4150,h2:4150'
    environ['EVENTFUL_ACK_TIMEOUT'] = '30s'

    settings = eventful.Configuration.load(environ=environ)
    assert settings.max_in_flight == 5
    assert settings.lookup_ttl == 10.0
    assert settings.endpoints == ('h1:4150', 'h2:4150')
    assert settings.ack_timeout == 30.0

    settings = eventful.Configuration.load(environ=environ, maxInFlight=7)
    assert settings.max_in_flight == 7

    environ['EVENTFUL_MAX_IN_FLIGHT'] = 'lots'
    with pytest.raises(ValueError):
        eventful.Configuration.load(environ=environ)

    bad = tmp_path / 'list.json'
    bad.write_text('[1, 2, 3]')
    with pytest.raises(ValueError):
        eventful.Configuration.load(bad, environ={})


def test_adapter_options():

    nsq = eventful.Configuration(client_id='worker', heartbeat_interval='10s')
    assert nsq.adapter_options() == {'client_id': 'worker', 'heartbeat_interval': 10.0}

    zmq = eventful.Configuration(adapter='zmq', client_id='worker')
    assert zmq.adapter_options() == {'client_id': 'worker'}


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
