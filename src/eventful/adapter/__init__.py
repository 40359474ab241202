"""Wire adapters, one per supported broker family.

The set is closed: configuration names one of the keys in :data:`families`.
"""

from .base import (
    ACK,
    CAPABILITIES,
    HEARTBEAT,
    PUBLISH,
    REQUEUE,
    SUBSCRIBE,
    Adapter,
    Failure,
    Heartbeat,
    Response,
)
from .nsq import NsqAdapter
from .zmq import ZmqAdapter

families = {
    'nsq': NsqAdapter,
    'zmq': ZmqAdapter,
}


def get(name, **kwargs):
    """ Return a new adapter instance for the broker family *name*; any
        *kwargs* are passed to the adapter's constructor.
    """

    try:
        family = families[name]
    except KeyError:
        raise ValueError('unknown adapter %r, expected one of %s' % (name, ', '.join(sorted(families))))

    return family(**kwargs)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
