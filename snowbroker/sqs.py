"""Client offers delivered through Amazon SQS queues."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Union

from .metrics import RendezvousMethod

log = logging.getLogger(__name__)

CLIENT_QUEUE_PREFIX = "snowflake-client-"
CLEANUP_THRESHOLD = 120.0
CLEANUP_INTERVAL = 30.0
MESSAGE_RETENTION_PERIOD = 5 * 60
LAST_MODIFIED_TIMESTAMP = "LastModifiedTimestamp"
MAX_NUMBER_OF_MESSAGES = 10
WAIT_TIME_SECONDS = 15
LIST_QUEUES_MAX_RESULTS = 1000

_QUEUE_POLL_INTERVAL = 0.1

OfferHandler = Callable[[str, str, RendezvousMethod], Union[str, bytes]]
Message = dict


class SQSClient(Protocol):
    """The SQS operations the handler uses, with SQS request field names."""

    def create_queue(self, **kwargs: Any) -> dict: ...

    def receive_message(self, **kwargs: Any) -> dict: ...

    def send_message(self, **kwargs: Any) -> dict: ...

    def delete_message(self, **kwargs: Any) -> dict: ...

    def list_queues(self, **kwargs: Any) -> dict: ...

    def get_queue_attributes(self, **kwargs: Any) -> dict: ...

    def delete_queue(self, **kwargs: Any) -> dict: ...


def _put_until_stopped(out_queue: queue.Queue, item: Any, stop_event: threading.Event) -> bool:
    while not stop_event.is_set():
        try:
            out_queue.put(item, timeout=_QUEUE_POLL_INTERVAL)
        except queue.Full:
            continue
        return True
    return False


@dataclass
class SQSHandler:
    """Reads client polls from the broker queue and answers on per-client queues.

    ``offer_handler`` is given the encoded poll request, the client's best
    guess address and the rendezvous method, and returns the encoded reply.
    ``locate_client`` optionally derives that address from the request body.
    """

    client: SQSClient
    queue_url: str
    offer_handler: OfferHandler
    region: str = ""
    cleanup_interval: float = CLEANUP_INTERVAL
    locate_client: Optional[Callable[[str], str]] = None

    def poll_messages(self, stop_event: threading.Event, out_queue: queue.Queue) -> None:
        """Receive messages from the broker queue into ``out_queue`` until stopped."""
        while not stop_event.is_set():
            try:
                res = self.client.receive_message(
                    QueueUrl=self.queue_url,
                    MaxNumberOfMessages=MAX_NUMBER_OF_MESSAGES,
                    WaitTimeSeconds=WAIT_TIME_SECONDS,
                    MessageAttributeNames=["All"],
                )
            except Exception as exc:
                log.warning("SQSHandler: encountered error while polling for messages: %s", exc)
                continue
            for message in res.get("Messages") or []:
                if not _put_until_stopped(out_queue, message, stop_event):
                    return

    def _list_client_queues(self) -> list[str]:
        urls: list[str] = []
        next_token = None
        while True:
            request = {
                "QueueNamePrefix": CLIENT_QUEUE_PREFIX,
                "MaxResults": LIST_QUEUES_MAX_RESULTS,
            }
            if next_token is not None:
                request["NextToken"] = next_token
            try:
                res = self.client.list_queues(**request)
            except Exception as exc:
                # Whatever is left is cleaned up on the next pass.
                log.warning(
                    "SQSHandler: encountered error while retrieving client queues to clean up: %s",
                    exc,
                )
                break
            urls.extend(res.get("QueueUrls") or [])
            next_token = res.get("NextToken")
            if next_token is None:
                break
        return urls

    def _cleanup_once(self) -> int:
        deleted = 0
        cutoff = time.time() - CLEANUP_THRESHOLD
        for url in self._list_client_queues():
            if CLIENT_QUEUE_PREFIX not in url:
                continue
            try:
                res = self.client.get_queue_attributes(
                    QueueUrl=url, AttributeNames=[LAST_MODIFIED_TIMESTAMP]
                )
            except Exception:
                # A queue being deleted is still listed for up to a minute.
                log.warning(
                    "SQSHandler: encountered error while getting attribute of client queue %s. "
                    "queue may already be deleted.",
                    url,
                )
                continue
            try:
                last_modified = int((res.get("Attributes") or {})[LAST_MODIFIED_TIMESTAMP])
            except (KeyError, ValueError, TypeError) as exc:
                log.warning(
                    "SQSHandler: encountered invalid lastModifiedTimetamp value from client queue %s: %s",
                    url,
                    exc,
                )
                continue
            if last_modified < cutoff:
                try:
                    self.client.delete_queue(QueueUrl=url)
                except Exception as exc:
                    log.warning(
                        "SQSHandler: encountered error when deleting client queue %s: %s", url, exc
                    )
                    continue
                deleted += 1
        log.info(
            "SQSHandler: finished running iteration of client queue cleanup. "
            "found and deleted %d client queues.",
            deleted,
        )
        return deleted

    def cleanup_client_queues(self, stop_event: threading.Event) -> None:
        """Delete stale client queues every ``cleanup_interval`` seconds until stopped."""
        while not stop_event.wait(self.cleanup_interval):
            self._cleanup_once()

    def handle_message(self, message: Message) -> None:
        """Answer one client poll on that client's own queue."""
        attributes = message.get("MessageAttributes") or {}
        client_id = (attributes.get("ClientID") or {}).get("StringValue")
        if client_id is None:
            log.info(
                "SQSHandler: got SDP offer in SQS message with no client ID. ignoring this message."
            )
            return

        try:
            res = self.client.create_queue(QueueName=CLIENT_QUEUE_PREFIX + client_id)
        except Exception as exc:
            log.warning(
                "SQSHandler: error encountered when creating answer queue for client %s: %s",
                client_id,
                exc,
            )
            return
        answer_url = res["QueueUrl"]

        body = message.get("Body") or ""
        remote_addr = ""
        if self.locate_client is not None:
            try:
                remote_addr = self.locate_client(body) or ""
            except ValueError as exc:
                log.warning(
                    "SQSHandler: error encountered when locating client %s: %s", client_id, exc
                )

        try:
            response = self.offer_handler(body, remote_addr, RendezvousMethod.SQS)
        except Exception as exc:
            log.warning("SQSHandler: error encountered when handling message: %s", exc)
            return
        if isinstance(response, bytes):
            response = response.decode("utf-8")

        try:
            self.client.send_message(QueueUrl=answer_url, MessageBody=response)
        except Exception as exc:
            log.warning(
                "SQSHandler: error encountered when sending answer to client %s: %s",
                client_id,
                exc,
            )

    def delete_message(self, message: Message) -> None:
        """Remove a handled message from the broker queue."""
        try:
            self.client.delete_message(
                QueueUrl=self.queue_url, ReceiptHandle=message.get("ReceiptHandle")
            )
        except Exception as exc:
            log.warning("SQSHandler: error encountered when deleting message: %s", exc)

    def poll_and_handle_messages(self, stop_event: threading.Event) -> None:
        """Receive, answer and delete client polls until ``stop_event`` is set."""
        log.info("SQSHandler: Starting to poll for messages at: %s", self.queue_url)
        messages: queue.Queue = queue.Queue(maxsize=2)
        threading.Thread(
            target=self.poll_messages, args=(stop_event, messages), daemon=True
        ).start()
        threading.Thread(
            target=self.cleanup_client_queues, args=(stop_event,), daemon=True
        ).start()

        while not stop_event.is_set():
            try:
                message = messages.get(timeout=_QUEUE_POLL_INTERVAL)
            except queue.Empty:
                continue
            if stop_event.is_set():
                return
            self.handle_message(message)
            self.delete_message(message)


def new_sqs_handler(
    client: SQSClient, queue_name: str, region: str, offer_handler: OfferHandler
) -> SQSHandler:
    """Create the broker queue if needed and return a handler reading from it."""
    res = client.create_queue(
        QueueName=queue_name,
        Attributes={"MessageRetentionPeriod": str(MESSAGE_RETENTION_PERIOD)},
    )
    return SQSHandler(
        client=client,
        queue_url=res["QueueUrl"],
        offer_handler=offer_handler,
        region=region,
    )