"""Amazon SQS queues.

SQS keeps no connection a Bus could hold on to: messages are fetched with
ReceiveMessage and acknowledged by deleting them. :class:`SqsClient` polls
and publishes directly, one API call at a time. Each topic maps to one
queue; queues not configured up front are looked up by name.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import PublishError, ResolutionFailed, TransportError
from .event import Event
from .record import Record

log = logging.getLogger(__name__)

# ReceiveMessage hands back at most this many messages per call.
max_batch = 10


class SqsClient:
    """Poll and publish on SQS queues.

    *queues* maps topics to queue URLs. *client* is a boto3 SQS client; one
    is built for *region* from the usual AWS environment when not given.
    *wait_time* enables long polling, up to 20 seconds.
    """

    def __init__(self, region: Optional[str] = None, queues: Optional[Dict[str, str]] = None,
                 client=None, wait_time: int = 0, max_messages: int = max_batch):

        if not 1 <= max_messages <= max_batch:
            raise ValueError(f"max_messages must be between 1 and {max_batch}")
        if not 0 <= wait_time <= 20:
            raise ValueError("wait_time must be between 0 and 20 seconds")

        self.client = client if client is not None else boto3.client("sqs", region_name=region)
        self.queues = dict(queues or {})
        self.wait_time = wait_time
        self.max_messages = max_messages
        self._lock = threading.Lock()

    def __repr__(self):
        return f"<SqsClient queues={sorted(self.queues)!r}>"

    def queue_url(self, topic: str) -> str:
        """Return the URL of the queue carrying *topic*, looking it up by
        name (and remembering it) if it wasn't configured."""

        with self._lock:
            url = self.queues.get(topic)
        if url is not None:
            return url

        try:
            url = self.client.get_queue_url(QueueName=topic)["QueueUrl"]
        except (BotoCoreError, ClientError) as exc:
            raise ResolutionFailed(topic, str(exc)) from exc

        with self._lock:
            self.queues[topic] = url
        return url

    # --- receiving ---

    def poll_messages(self, queue_url: str, delete_on_receipt: bool = False) -> List[dict]:
        """One ReceiveMessage call; returns the raw message dicts.

        With *delete_on_receipt* every message is deleted right away, which
        is at-most-once delivery. Otherwise call :meth:`delete` once a
        message is handled, or SQS makes it visible again after the queue's
        visibility timeout.
        """

        try:
            answer = self.client.receive_message(
                QueueUrl=queue_url,
                MaxNumberOfMessages=self.max_messages,
                WaitTimeSeconds=self.wait_time,
                MessageAttributeNames=["All"],
            )
        except (BotoCoreError, ClientError) as exc:
            raise TransportError(f"{queue_url}: receive failed: {exc}") from exc

        messages = answer.get("Messages") or []
        log.debug("received %d message(s) from %s", len(messages), queue_url)

        if delete_on_receipt:
            for message in messages:
                if message.get("ReceiptHandle"):
                    self.delete(queue_url, message)

        return messages

    def poll_strings(self, queue_url: str, delete_on_receipt: bool = False) -> List[str]:
        return [m.get("Body", "") for m in self.poll_messages(queue_url, delete_on_receipt)]

    def poll_events(self, topic: str, delete_on_receipt: bool = False) -> List[Event]:
        """Poll the queue for *topic*; string message attributes become the
        event headers."""

        events = []
        for message in self.poll_messages(self.queue_url(topic), delete_on_receipt):
            headers = {}
            for name, value in (message.get("MessageAttributes") or {}).items():
                if "StringValue" in value:
                    headers[name] = value["StringValue"]
            events.append(Event(topic, message.get("Body", "").encode("utf-8"), headers))
        return events

    def poll(self, record_type, delete_on_receipt: bool = False) -> list:
        """Poll the queue for *record_type*'s topic and decode each message.
        A body that does not decode raises ValueError."""

        if not record_type.topic:
            raise ValueError(f"{record_type.__name__} has no topic")

        return [record_type.from_event(e) for e in self.poll_events(record_type.topic, delete_on_receipt)]

    def delete(self, queue_url: str, message) -> None:
        """Acknowledge *message* (a message dict or its receipt handle)."""

        handle = message if isinstance(message, str) else message["ReceiptHandle"]

        try:
            self.client.delete_message(QueueUrl=queue_url, ReceiptHandle=handle)
        except (BotoCoreError, ClientError) as exc:
            raise TransportError(f"{queue_url}: delete failed: {exc}") from exc

    # --- publishing ---

    def publish(self, item, group_id: Optional[str] = None, deduplication_id: Optional[str] = None) -> str:
        """Send an :class:`~eventful.Event` or a
        :class:`~eventful.record.Record` to the queue for its topic and
        return the SQS message id.

        *group_id* (or the record's :meth:`~eventful.record.Record.message_group`)
        is required by FIFO queues. Failures raise PublishError.
        """

        if isinstance(item, Record):
            if group_id is None:
                group_id = item.message_group()
            item = item.to_event()
        if not isinstance(item, Event):
            raise TypeError(f"cannot publish {type(item).__name__}")

        try:
            body = item.payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValueError("SQS message bodies must be UTF-8 text") from exc

        try:
            queue_url = self.queue_url(item.topic)
        except ResolutionFailed as exc:
            raise PublishError(exc, 1) from exc

        request = {"QueueUrl": queue_url, "MessageBody": body}
        if item.headers:
            request["MessageAttributes"] = {
                name: {"DataType": "String", "StringValue": value} for name, value in item.headers.items()
            }
        if group_id is not None:
            request["MessageGroupId"] = group_id
        if deduplication_id is not None:
            request["MessageDeduplicationId"] = deduplication_id

        try:
            answer = self.client.send_message(**request)
        except (BotoCoreError, ClientError) as exc:
            raise PublishError(exc, 1) from exc

        log.debug("sent %s to %s", answer["MessageId"], queue_url)
        return answer["MessageId"]
