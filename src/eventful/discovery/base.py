"""Discovery interface: who serves a topic."""

from abc import ABC, abstractmethod
from typing import List, Tuple


class Discovery(ABC):

    # lifecycle
    def start(self):
        pass

    def stop(self):
        pass

    # query known producers of a topic, as (host, port) pairs
    @abstractmethod
    def lookup(self, topic: str) -> List[Tuple[str, int]]:
        pass
