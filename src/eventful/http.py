"""Publishing through nsqd's HTTP interface.

Useful from short-lived scripts that would rather not hold a TCP connection
and a Bus. There is no retry here: one request, one answer.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .adapter import envelope
from .errors import PublishError
from .event import Event
from .record import Record
from .router import BrokerEndpoint

log = logging.getLogger(__name__)

default_port = 4151


def _url(host: str) -> str:
    endpoint = BrokerEndpoint.parse(host, default_port)
    scheme = host.split("://", 1)[0] if "://" in host else "http"
    return f"{scheme}://{endpoint.address}/pub"


def post(host: str, topic: str, body, client: Optional[httpx.Client] = None, timeout: float = 5.0) -> None:
    """POST *body* to ``/pub?topic=<topic>`` on the nsqd at *host*.

    *host* is ``host[:port]`` or an http URL. Anything but a 2xx answer
    raises :class:`~eventful.errors.PublishError`.
    """

    if isinstance(body, str):
        body = body.encode("utf-8")

    url = _url(host)
    owned = client is None
    if owned:
        client = httpx.Client(timeout=timeout)

    try:
        response = client.post(url, params={"topic": topic}, content=bytes(body))
    except httpx.HTTPError as exc:
        raise PublishError(exc, 1) from exc
    finally:
        if owned:
            client.close()

    if not response.is_success:
        raise PublishError(f"{url} answered {response.status_code}: {response.text.strip()}", 1)

    log.debug("posted %d bytes to %r via %s", len(body), topic, url)


def post_event(host: str, item, client: Optional[httpx.Client] = None, timeout: float = 5.0) -> None:
    """Post an :class:`~eventful.Event` or a :class:`~eventful.record.Record`."""

    if isinstance(item, Record):
        item = item.to_event()
    if not isinstance(item, Event):
        raise TypeError(f"cannot post {type(item).__name__}")

    post(host, item.topic, envelope.pack_body(item), client, timeout)
