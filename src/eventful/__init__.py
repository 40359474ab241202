""" A message-bus abstraction: publish events and subscribe handlers through
    one :class:`Bus`, whichever broker family (NSQ or a ZeroMQ broker) is
    configured underneath.
"""

__version__ = '0.1.0'

# Utility components.

from . import json
from . import errors
from . import retry

# Layers, leaf to root.

from . import adapter
from . import transport
from . import discovery
from . import router
from . import config

from .errors import (
    ConnectionUnavailable,
    EventfulError,
    HandlerError,
    ProtocolError,
    PublishError,
    ResolutionFailed,
    TransportConnectionError,
    TransportError,
    TransportTimeout,
    UnsupportedCapability,
)

# Primary public-facing interfaces.

from .event import Ack, Event
from .config import Configuration
from .record import Record
from .consumer import AT_LEAST_ONCE, AT_MOST_ONCE, InFlightMessage, SubscriptionHandle
from .bus import Bus

# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
