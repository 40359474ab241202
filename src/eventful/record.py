""" Typed events. A :class:`Record` subclass declares its topic and its
    fields; instances travel as JSON payloads::

        class Click(Record):
            topic = 'clicks'

            user: str
            x: int
            y: int

        bus.emit(Click('alice', 10, 20))
"""

from typing import ClassVar

import msgspec

from .event import Event


class Record(msgspec.Struct):
    """ Base class for typed events; subclasses set the *topic* class
        attribute. Field declarations follow :class:`msgspec.Struct`.
    """

    topic: ClassVar[str] = ''


    def to_event(self, headers=None):
        """ Return the :class:`eventful.Event` carrying this record.
        """

        topic = type(self).topic
        if not topic:
            raise ValueError('%s has no topic' % (type(self).__name__,))

        return Event(topic, msgspec.json.encode(self), headers or {})


    def message_group(self):
        """ Records in the same group are delivered one at a time, in order,
            by brokers that support it (SQS FIFO queues). Subclasses
            override this; the default is no group.
        """

        return None


    @classmethod
    def from_event(cls, event):
        """ Decode a record of this type from *event*. A payload that is not
            a valid encoding of *cls* raises :class:`ValueError`.
        """

        try:
            return msgspec.json.decode(event.payload, type=cls)
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            raise ValueError('cannot decode %s from %r: %s' % (cls.__name__, event.topic, e)) from e


# end of class Record


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
