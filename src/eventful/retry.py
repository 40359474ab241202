""" Exponential backoff, used for publish retries, reconnects, and the
    delay attached to requeued messages.
"""

import time


class Backoff:
    """ The delay before retry number *n* (counting from 1) is
        ``initial * multiplier ** (n - 1)``, capped at *max*. A
        :class:`Backoff` holds no per-operation state; callers count their
        own attempts.
    """

    def __init__(self, initial=0.1, max=5.0, multiplier=2.0):

        initial = float(initial)
        max = float(max)
        multiplier = float(multiplier)

        if initial < 0 or max < 0:
            raise ValueError('backoff delays must be non-negative')

        if multiplier < 1:
            raise ValueError('backoff multiplier must be at least 1')

        self.initial = initial
        self.max = max
        self.multiplier = multiplier


    def __eq__(self, other):
        if not isinstance(other, Backoff):
            return NotImplemented

        return (self.initial, self.max, self.multiplier) == (other.initial, other.max, other.multiplier)


    def __repr__(self):
        return 'Backoff(initial=%r, max=%r, multiplier=%r)' % (self.initial, self.max, self.multiplier)


    def delay(self, attempt):
        """ Return the delay in seconds to wait after failed attempt number
            *attempt*. Attempt numbers below one are treated as one.
        """

        attempt = max(int(attempt), 1)

        # Avoid overflow for very large attempt counts; once the cap is
        # reached there's no point in computing the exponent.

        delay = self.initial
        for ignored in range(attempt - 1):
            delay *= self.multiplier
            if delay >= self.max:
                return self.max

        return min(delay, self.max)


    def delays(self, attempts):
        """ Iterate over the delays between *attempts* total attempts; there
            is one fewer delay than there are attempts.
        """

        for attempt in range(1, attempts):
            yield self.delay(attempt)


    def sleep(self, attempt, stop=None):
        """ Sleep for the delay that follows *attempt*. If *stop* is a
            :class:`threading.Event` the sleep ends early when it is set;
            the return value is True if the sleep was interrupted.
        """

        delay = self.delay(attempt)

        if stop is None:
            time.sleep(delay)
            return False

        return stop.wait(delay)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
