"""Exception taxonomy.

Every error raised by this package derives from :class:`EventfulError`, so
callers can catch the whole family in one place.
"""

from __future__ import annotations

from typing import Optional


class EventfulError(Exception):
    """Base class for all eventful errors."""


# Transport errors. These are the transient, connection-level failures that
# the publisher and dispatcher retry locally.

class TransportError(EventfulError):
    """Base class for all transport-layer errors."""


class TransportTimeout(TransportError):
    """A read or acknowledgment did not arrive in time."""


class TransportConnectionError(TransportError):
    """The transport could not establish or maintain a connection."""


class ConnectionUnavailable(TransportError):
    """The pool is exhausted, closed, or every reconnect attempt failed."""


class ProtocolError(EventfulError):
    """A malformed frame arrived, or the broker answered with an error frame.

    *code* is the broker's error code when there is one (``E_BAD_TOPIC``),
    and *retryable* says whether the same command may succeed if sent again.
    """

    def __init__(self, text: str, code: Optional[str] = None, retryable: bool = False):
        self.code = code
        self.text = text
        self.retryable = retryable
        if code:
            text = f"{code}: {text}" if text else code
        super().__init__(text)


class UnsupportedCapability(EventfulError):
    """The selected broker family cannot do what was asked of it."""

    def __init__(self, capability: str, adapter: str):
        self.capability = capability
        self.adapter = adapter
        super().__init__(f"the {adapter!r} adapter does not support {capability!r}")


class ResolutionFailed(EventfulError):
    """No reachable broker endpoint is known for a topic."""

    def __init__(self, topic: str, detail: str = ""):
        self.topic = topic
        text = f"cannot resolve topic {topic!r}"
        if detail:
            text = f"{text}: {detail}"
        super().__init__(text)


class PublishError(EventfulError):
    """A publish did not complete after *attempts* attempts.

    *reason* is the last underlying exception (or a short description when
    there is none); it is also chained as ``__cause__`` where one exists.
    """

    def __init__(self, reason, attempts: int):
        self.reason = reason
        self.attempts = attempts
        super().__init__(f"publish failed after {attempts} attempt(s): {reason}")


class HandlerError(EventfulError):
    """An application handler raised while processing a message.

    These never reach the publishing side; the dispatcher logs them and
    requeues the message.
    """

    def __init__(self, message_id: str, subscription: str, error: BaseException):
        self.message_id = message_id
        self.subscription = subscription
        self.error = error
        super().__init__(f"{subscription}: handler failed on {message_id}: {error!r}")
