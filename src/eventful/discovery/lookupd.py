"""nsqlookupd HTTP discovery.

``GET /lookup?topic=<topic>`` answers with the nsqd producers that carry the
topic. nsqlookupd before 1.0 wraps the answer as ``{"status_code": 200,
"data": {...}}``; later versions return the object bare. A 404 means the
topic is not registered anywhere yet, which is not an error.
"""

from __future__ import annotations

import logging
import time
from typing import Iterable, List, Optional, Tuple

import httpx

from .. import json
from ..errors import ResolutionFailed
from .base import Discovery

log = logging.getLogger(__name__)

default_port = 4161


def base_url(address: str) -> str:
    if "://" not in address:
        address = "http://" + address
    return address.rstrip("/")


class LookupdDiscovery(Discovery):
    """Query every configured nsqlookupd and merge their answers.

    *endpoints* are BrokerEndpoint instances with the discovery role; their
    health is updated as lookups succeed or fail. All queries of one lookup
    share a single *timeout* deadline.
    """

    def __init__(self, endpoints: Iterable, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.endpoints = list(endpoints)
        self.timeout = timeout
        self._owned = client is None
        self._client = client if client is not None else httpx.Client(timeout=timeout)

    def __repr__(self):
        return f"LookupdDiscovery({[e.address for e in self.endpoints]!r})"

    def stop(self):
        if self._owned:
            self._client.close()

    def lookup(self, topic: str) -> List[Tuple[str, int]]:
        found = []
        reached = 0
        errors = []
        deadline = time.monotonic() + self.timeout

        for endpoint in self.endpoints:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                errors.append(f"{endpoint.address}: lookup deadline passed")
                continue

            try:
                producers = self._query(endpoint, topic, remaining)
            except (httpx.HTTPError, ValueError) as exc:
                endpoint.mark_failed()
                errors.append(f"{endpoint.address}: {exc}")
                log.warning("lookup of %r on %s failed: %s", topic, endpoint.address, exc)
                continue

            endpoint.mark_up()
            reached += 1
            for producer in producers:
                if producer not in found:
                    found.append(producer)

        if reached == 0 and self.endpoints:
            raise ResolutionFailed(topic, "no discovery endpoint reachable (" + "; ".join(errors) + ")")

        return found

    def _query(self, endpoint, topic: str, timeout: float) -> List[Tuple[str, int]]:
        url = base_url(endpoint.url or endpoint.address) + "/lookup"
        response = self._client.get(
            url,
            params={"topic": topic},
            headers={"Accept": "application/vnd.nsq; version=1.0"},
            timeout=timeout,
        )

        if response.status_code == 404:
            return []

        response.raise_for_status()
        answer = json.loads(response.content)
        if not isinstance(answer, dict):
            raise ValueError("lookup answer is not a JSON object")

        if "data" in answer and isinstance(answer["data"], dict):
            answer = answer["data"]

        records = answer.get("producers") or ()
        if not isinstance(records, list):
            raise ValueError(f"producers is not a list: {records!r}")

        producers = []
        for producer in records:
            if not isinstance(producer, dict):
                raise ValueError(f"malformed producer record: {producer!r}")
            host = producer.get("broadcast_address") or producer.get("hostname")
            port = producer.get("tcp_port")
            if not isinstance(host, str) or not host or not isinstance(port, int) or isinstance(port, bool):
                raise ValueError(f"incomplete producer record: {producer!r}")
            producers.append((host, port))

        return producers
