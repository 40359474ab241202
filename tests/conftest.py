import pytest

import eventful

import fakensqd
import fakezmq


@pytest.fixture
def nsqd():

    server = fakensqd.FakeNsqd()
    server.start()

    yield server

    server.stop()


@pytest.fixture
def nsqd2():

    server = fakensqd.FakeNsqd()
    server.start()

    yield server

    server.stop()


@pytest.fixture
def broker():

    server = fakezmq.FakeBroker()
    server.start()

    yield server

    server.stop()


def options(**overrides):
    """ Configuration options tuned for tests: short backoffs and timeouts
        so that failures surface quickly.
    """

    settings = dict()
    settings['client_id'] = 'pytest'
    settings['retry_backoff'] = '10ms,50ms,2'
    settings['requeue_backoff'] = '10ms,100ms,2'
    settings['connect_timeout'] = 2
    settings['ack_timeout'] = 5
    settings['drain_timeout'] = 1
    settings['lookup_ttl'] = 1

    settings.update(overrides)
    return eventful.Configuration(**settings)


@pytest.fixture
def configure():
    return options


@pytest.fixture
def bus(nsqd):

    instance = eventful.Bus(options(endpoints=[nsqd.address]))

    yield instance

    instance.close()


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
