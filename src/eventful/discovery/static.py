from typing import List, Tuple

from .base import Discovery


class StaticDiscovery(Discovery):
    """
    Discovery through configured data-node endpoints. Every configured
    endpoint is assumed to serve every topic; NSQ creates a topic on the
    first publish.
    """

    def __init__(self, endpoints: List[Tuple[str, int]]):
        self._endpoints = list(endpoints)

    def __repr__(self):
        return f"StaticDiscovery({self._endpoints!r})"

    def lookup(self, topic):
        return list(self._endpoints)
