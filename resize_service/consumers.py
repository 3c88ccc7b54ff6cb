"""
Notification consumers.

Two trigger shapes deliver work to the orchestrator:
 - `SqsConsumer` long-polls a queue and deletes messages explicitly,
 - `LambdaBatchConsumer` wraps one SQS event handed to a function invocation
   and reports unacknowledged records as partial batch failures.

Both parse S3 event bodies into `Notification`s the same way.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from botocore.exceptions import BotoCoreError, ClientError

from .errors import FatalPipelineError, PipelineError, TransientIOError
from .events import MalformedNotification, parse_object_ref
from .models import Notification
from .storage import classify_botocore_error, classify_client_error

logger = logging.getLogger(__name__)

# SQS caps ChangeMessageVisibility at 12 hours.
MAX_VISIBILITY_TIMEOUT = 43200

# Per-message rejections: the receipt expired or the message was already
# redelivered. The queue redelivers on its own, so these never halt the worker.
_STALE_RECEIPT_CODES = {
    "ReceiptHandleIsInvalid",
    "InvalidParameterValue",
    "AWS.SimpleQueueService.MessageNotInflight",
}


class Consumer(Protocol):
    def receive(self, max_messages: int) -> List[Notification]:
        ...

    def ack(self, notification: Notification) -> None:
        ...

    def release(self, notification: Notification, delay_seconds: int) -> None:
        ...


def notification_from_body(body: str, receipt: Any, attempt: int = 1, message_id: Optional[str] = None) -> Notification:
    try:
        ref = parse_object_ref(body)
    except MalformedNotification as exc:
        logger.warning("Unparseable notification %s: %s", message_id, exc)
        return Notification(object_ref=None, receipt=receipt, attempt=attempt, message_id=message_id, parse_error=str(exc))
    return Notification(object_ref=ref, receipt=receipt, attempt=attempt, message_id=message_id)


def _receive_count(attributes: Dict[str, str]) -> int:
    try:
        return max(1, int(attributes.get("ApproximateReceiveCount", 1)))
    except (TypeError, ValueError):
        return 1


def _classify(exc: Exception, action: str) -> PipelineError:
    if isinstance(exc, ClientError):
        return classify_client_error(exc, action)
    return classify_botocore_error(exc, action)


def _is_stale_receipt(exc: Exception) -> bool:
    return isinstance(exc, ClientError) and exc.response.get("Error", {}).get("Code") in _STALE_RECEIPT_CODES


class SqsConsumer:
    """
    Pull consumer backed by an SQS queue.

    Throttling and connection errors are reported and left to the next poll.
    Authorization and configuration errors raise `FatalPipelineError` so the
    orchestrator halts instead of polling a queue it can never use.
    """

    def __init__(
        self,
        client,
        queue_url: str,
        wait_time_seconds: int = 20,
        visibility_timeout: Optional[int] = None,
    ) -> None:
        self._client = client
        self.queue_url = queue_url
        self.wait_time_seconds = wait_time_seconds
        self.visibility_timeout = visibility_timeout

    def receive(self, max_messages: int) -> List[Notification]:
        params = {
            "QueueUrl": self.queue_url,
            "MaxNumberOfMessages": max(1, min(max_messages, 10)),
            "WaitTimeSeconds": self.wait_time_seconds,
            "AttributeNames": ["ApproximateReceiveCount"],
        }
        if self.visibility_timeout is not None:
            params["VisibilityTimeout"] = self.visibility_timeout
        try:
            response = self._client.receive_message(**params)
        except (ClientError, BotoCoreError) as exc:
            error = _classify(exc, f"receive from {self.queue_url}")
            if not error.retryable:
                raise FatalPipelineError(str(error), cause=error) from exc
            logger.warning("Receiving from %s failed: %s", self.queue_url, error)
            return []

        notifications = []
        for message in response.get("Messages", []):
            notifications.append(
                notification_from_body(
                    message.get("Body", ""),
                    receipt=message["ReceiptHandle"],
                    attempt=_receive_count(message.get("Attributes", {})),
                    message_id=message.get("MessageId"),
                )
            )
        return notifications

    def ack(self, notification: Notification) -> None:
        """
        Delete the message.

        Raises:
            TransientIOError: the delete did not happen and the message will
                be redelivered.
            FatalPipelineError: the queue rejected the credentials or
                configuration.
        """
        try:
            self._client.delete_message(QueueUrl=self.queue_url, ReceiptHandle=notification.receipt)
        except (ClientError, BotoCoreError) as exc:
            action = f"delete message {notification.message_id}"
            if _is_stale_receipt(exc):
                raise TransientIOError(f"{action} failed: stale receipt handle") from exc
            error = _classify(exc, action)
            if error.fatal:
                raise FatalPipelineError(str(error), cause=error) from exc
            raise TransientIOError(str(error)) from exc

    def release(self, notification: Notification, delay_seconds: int) -> None:
        """Make the message visible again after `delay_seconds`."""
        try:
            self._client.change_message_visibility(
                QueueUrl=self.queue_url,
                ReceiptHandle=notification.receipt,
                VisibilityTimeout=max(0, min(delay_seconds, MAX_VISIBILITY_TIMEOUT)),
            )
        except (ClientError, BotoCoreError) as exc:
            error = _classify(exc, f"reschedule message {notification.message_id}")
            if error.fatal and not _is_stale_receipt(exc):
                raise FatalPipelineError(str(error), cause=error) from exc
            # The queue's own visibility timeout still redelivers the message.
            logger.warning("Could not reschedule message %s: %s", notification.message_id, error)


class LambdaBatchConsumer:
    """
    Push consumer for one SQS-triggered function invocation.

    Records are handed out once. Anything not acknowledged by the end of the
    invocation is reported through `batch_item_failures()` so the event source
    redelivers it.
    """

    def __init__(self, event: Dict[str, Any]) -> None:
        self._records: List[Dict[str, Any]] = list(event.get("Records", []))
        self._delivered = False
        self._acked: Set[str] = set()
        self._lock = Lock()

    def receive(self, max_messages: int = 10) -> List[Notification]:
        if self._delivered:
            return []
        self._delivered = True
        return [
            notification_from_body(
                record.get("body", ""),
                receipt=record["messageId"],
                attempt=_receive_count(record.get("attributes", {})),
                message_id=record["messageId"],
            )
            for record in self._records
        ]

    def ack(self, notification: Notification) -> None:
        with self._lock:
            self._acked.add(notification.receipt)

    def release(self, notification: Notification, delay_seconds: int) -> None:
        # Redelivery timing belongs to the event source mapping.
        return None

    def message_ids(self) -> Iterable[str]:
        return [record["messageId"] for record in self._records]

    def batch_item_failures(self) -> List[Dict[str, str]]:
        with self._lock:
            return [{"itemIdentifier": mid} for mid in self.message_ids() if mid not in self._acked]
