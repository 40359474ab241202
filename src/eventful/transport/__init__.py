"""Transport links, keyed by the name an adapter declares."""

from . import tcp
from . import zmq
from .base import Link

links = {
    'tcp': tcp.Link,
    'zmq': zmq.Link,
}


def link(kind, host, port, timeout=None):
    """ Return a new, unopened link of type *kind* to *host*:*port*.
    """

    try:
        factory = links[kind]
    except KeyError:
        raise ValueError('unknown link type: %r' % (kind,))

    return factory(host, port, timeout)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
