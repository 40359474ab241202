"""Header-plus-payload framing shared by the adapters.

Layout:
    [compact JSON header][SEP][payload...]

The payload section is omitted when there is none. Compact JSON escapes
newlines inside strings, so the first SEP always ends the header.
"""

from __future__ import annotations

from typing import Optional, Tuple

from .. import json
from ..errors import ProtocolError
from ..event import Event


SEP = b"\n\n"

# Leads an NSQ message body that carries headers. NSQ itself has no notion
# of message headers, so they ride inside the body.
MAGIC = b"\x00EVT"


def pack_frame(header: dict, payload: Optional[bytes] = None) -> bytes:
    """Serialize a header mapping and optional payload to one frame."""

    header_bytes = json.dumps(header)

    if payload is None:
        return header_bytes

    return header_bytes + SEP + payload


def unpack_frame(frame: bytes) -> Tuple[dict, Optional[bytes]]:
    """Deserialize one frame to ``(header, payload)``."""

    try:
        header_bytes, payload = frame.split(SEP, 1)
    except ValueError:
        header_bytes = frame
        payload = None

    try:
        header = json.loads(header_bytes)
    except ValueError as exc:
        raise ProtocolError(f"malformed frame header: {exc}") from exc

    if not isinstance(header, dict):
        raise ProtocolError("frame header is not a JSON object")

    return header, payload


def pack_body(event: Event) -> bytes:
    """Return the message body to store on a broker without header support.

    An event without headers is sent verbatim, so that consumers outside this
    package read the payload they expect. The envelope is used when there are
    headers, or when the raw payload would be mistaken for an envelope.
    """

    if not event.headers and not event.payload.startswith(MAGIC):
        return event.payload

    return MAGIC + pack_frame({"headers": dict(event.headers)}, event.payload)


def unpack_body(body: bytes, topic: str) -> Event:
    """Inverse of :func:`pack_body`; *topic* comes from the subscription."""

    if not body.startswith(MAGIC):
        return Event(topic, body)

    header, payload = unpack_frame(body[len(MAGIC):])
    headers = header.get("headers") or {}

    if not isinstance(headers, dict):
        raise ProtocolError("message envelope headers are not a JSON object")

    try:
        return Event(topic, payload or b"", headers)
    except TypeError as exc:
        raise ProtocolError(f"bad message envelope: {exc}") from exc
