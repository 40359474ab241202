""" Configuration for a :class:`eventful.Bus`. Options come from, in
    increasing order of priority: the defaults below, a JSON file, the
    environment, and keyword arguments.

    Option names are accepted either in snake_case (``max_in_flight``) or
    camelCase (``maxInFlight``). Durations are seconds, either as numbers
    or as strings with a unit: '250ms', '5s', '1m', '1h'.
"""

import os
import re
import socket

from . import json
from .retry import Backoff


defaults = dict()
defaults['adapter'] = 'nsq'
defaults['endpoints'] = ()
defaults['discovery_endpoints'] = ()
defaults['max_in_flight'] = 1
defaults['ack_timeout'] = 60.0
defaults['retry_backoff'] = Backoff(0.1, 5.0, 2.0)
defaults['requeue_backoff'] = Backoff(1.0, 60.0, 2.0)
defaults['publish_attempts'] = 3
defaults['max_pending'] = 64
defaults['max_idle'] = 2
defaults['max_total'] = 8
defaults['connect_timeout'] = 5.0
defaults['connect_attempts'] = 3
defaults['lookup_ttl'] = 60.0
defaults['lookup_max_stale'] = 300.0
defaults['lookup_timeout'] = 5.0
defaults['health_cooldown'] = 0.1
defaults['drain_timeout'] = 5.0
defaults['heartbeat_interval'] = 30.0
defaults['client_id'] = None


# How each option is interpreted; anything not listed here is a string.

_kinds = dict()
_kinds['endpoints'] = 'list'
_kinds['discovery_endpoints'] = 'list'
_kinds['max_in_flight'] = 'count'
_kinds['publish_attempts'] = 'count'
_kinds['max_pending'] = 'count'
_kinds['max_idle'] = 'integer'
_kinds['max_total'] = 'count'
_kinds['connect_attempts'] = 'count'
_kinds['ack_timeout'] = 'duration'
_kinds['connect_timeout'] = 'duration'
_kinds['lookup_ttl'] = 'duration'
_kinds['lookup_max_stale'] = 'duration'
_kinds['lookup_timeout'] = 'duration'
_kinds['health_cooldown'] = 'duration'
_kinds['drain_timeout'] = 'duration'
_kinds['heartbeat_interval'] = 'duration'
_kinds['retry_backoff'] = 'backoff'
_kinds['requeue_backoff'] = 'backoff'

_units = {'ms': 0.001, 's': 1, 'm': 60, 'h': 3600}
_duration = re.compile(r'^\s*([0-9]*\.?[0-9]+)\s*(ms|s|m|h)?\s*$')
_camel = re.compile(r'(?<=[a-z0-9])([A-Z])')

environment_prefix = 'EVENTFUL_'


def normalize(key):
    """ Return the snake_case form of an option name.
    """

    return _camel.sub(r'_\1', key).lower()


def duration(value):
    """ Interpret *value* as a number of seconds.
    """

    if isinstance(value, bool):
        raise ValueError('not a duration: %r' % (value,))

    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _duration.match(str(value))
        if match is None:
            raise ValueError('not a duration: %r' % (value,))

        number, unit = match.groups()
        seconds = float(number) * _units[unit or 's']

    if seconds < 0:
        raise ValueError('durations cannot be negative: %r' % (value,))

    return seconds


def backoff(value):
    """ Interpret *value* as a :class:`eventful.retry.Backoff`: an instance
        already, a mapping with any of 'initial', 'max' and 'multiplier',
        or a string 'initial,max,multiplier'.
    """

    if isinstance(value, Backoff):
        return value

    if isinstance(value, str):
        fields = [field.strip() for field in value.split(',')]
        if len(fields) != 3:
            raise ValueError("backoff strings look like '100ms,5s,2', not %r" % (value,))
        value = dict(zip(('initial', 'max', 'multiplier'), fields))

    if not isinstance(value, dict):
        raise ValueError('not a backoff policy: %r' % (value,))

    unknown = set(value) - set(('initial', 'max', 'multiplier'))
    if unknown:
        raise ValueError('unknown backoff fields: ' + ', '.join(sorted(unknown)))

    initial = duration(value.get('initial', 0.1))
    maximum = duration(value.get('max', 5.0))
    multiplier = float(value.get('multiplier', 2.0))

    return Backoff(initial, maximum, multiplier)


def _coerce(key, value):

    kind = _kinds.get(key)

    if kind is None:
        if value is None:
            return None
        return str(value)

    if kind == 'list':
        if isinstance(value, str):
            value = value.split(',')
        return tuple(str(item).strip() for item in value if str(item).strip())

    if kind == 'integer' or kind == 'count':
        if isinstance(value, bool):
            raise ValueError('not an integer: %r' % (value,))
        value = int(value)
        minimum = 1 if kind == 'count' else 0
        if value < minimum:
            raise ValueError('must be at least %d' % (minimum,))
        return value

    if kind == 'duration':
        return duration(value)

    if kind == 'backoff':
        return backoff(value)

    raise RuntimeError('unhandled option kind: ' + kind)


class Configuration:
    """ Every recognized option is an attribute of a :class:`Configuration`
        instance. Unknown option names, and values that can't be interpreted
        for their option, raise :class:`ValueError` naming the option.
    """

    def __init__(self, **options):

        for key, value in defaults.items():
            setattr(self, key, value)

        if self.client_id is None:
            self.client_id = socket.gethostname().split('.')[0]

        self.update(options)


    def __repr__(self):
        return 'Configuration(%s)' % (', '.join('%s=%r' % item for item in self.as_dict().items()))


    def update(self, options):

        for key, value in options.items():
            name = normalize(key)

            if name not in defaults:
                raise ValueError('unknown configuration option: ' + repr(key))

            try:
                value = _coerce(name, value)
            except (TypeError, ValueError) as e:
                raise ValueError('bad value for %s: %s' % (key, e))

            setattr(self, name, value)


    def as_dict(self):
        return dict((key, getattr(self, key)) for key in defaults)


    def adapter_options(self):
        """ Return the constructor arguments for the configured adapter.
        """

        options = dict(client_id=self.client_id)

        if self.adapter == 'nsq':
            options['heartbeat_interval'] = self.heartbeat_interval

        return options


    @classmethod
    def load(cls, path=None, environ=None, **overrides):
        """ Build a :class:`Configuration` from a JSON file at *path* (or
            the file named by $EVENTFUL_CONFIG), then the environment, then
            the keyword *overrides*.
        """

        if environ is None:
            environ = os.environ

        if path is None:
            path = environ.get(environment_prefix + 'CONFIG')

        instance = cls()

        if path:
            with open(path, 'rb') as file:
                contents = json.loads(file.read())

            if not isinstance(contents, dict):
                raise ValueError('configuration file must hold a JSON object: ' + str(path))

            instance.update(contents)

        from_environment = dict()
        for key in defaults:
            name = environment_prefix + key.upper()
            try:
                from_environment[key] = environ[name]
            except KeyError:
                continue

        instance.update(from_environment)
        instance.update(overrides)

        return instance


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
