import pytest

import eventful


class Click(eventful.Record):
    topic = 'clicks'

    user: str
    x: int
    y: int


class Untitled(eventful.Record):
    value: int


def test_to_event():

    click = Click('alice', 10, 20)
    event = click.to_event({'trace': 'abc'})

    assert event.topic == 'clicks'
    assert eventful.json.loads(event.payload) == {'user': 'alice', 'x': 10, 'y': 20}
    assert event.headers['trace'] == 'abc'

    assert Click.from_event(event) == click

    with pytest.raises(ValueError):
        Untitled(3).to_event()


def test_from_event():

    with pytest.raises(ValueError):
        Click.from_event(eventful.Event('clicks', b'{"user": "alice"}'))

    with pytest.raises(ValueError):
        Click.from_event(eventful.Event('clicks', b'{"user": "alice", "x": "ten", "y": 2}'))

    with pytest.raises(ValueError):
        Click.from_event(eventful.Event('clicks', b'not json'))


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
