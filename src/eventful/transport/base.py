"""Link interface.

A link moves whole frames between this process and one broker endpoint.
It knows nothing of what the frames mean; that is the adapter's job.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class Link(ABC):
    """Minimal contract for a byte-level link."""

    def __init__(self, host: str, port: int, timeout: Optional[float] = None):
        self.host = host
        self.port = int(port)
        self.timeout = timeout

    def __repr__(self):
        return f"<{type(self).__name__} {self.host}:{self.port}>"

    @abstractmethod
    def open(self) -> None:
        """Establish the underlying connection/socket."""

    @abstractmethod
    def close(self) -> None:
        """Tear down the underlying connection/socket."""

    @abstractmethod
    def send(self, data: bytes) -> None:
        """Send raw bytes."""

    @abstractmethod
    def recv(self, timeout: Optional[float] = None) -> bytes:
        """Receive the next complete inbound frame.

        Raises :class:`~eventful.errors.TransportTimeout` if nothing
        complete arrives within *timeout* seconds; None blocks.
        """

    @property
    def is_open(self) -> bool:
        """Whether the link is currently connected."""
        return False
