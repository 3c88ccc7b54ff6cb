"""Sinks for objects that can never be delivered."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from . import config
from .errors import TransientIOError
from .models import DeadLetterRecord

logger = logging.getLogger(__name__)


class DeadLetterSink(Protocol):
    def record(self, entry: DeadLetterRecord) -> None:
        ...


class SqsDeadLetterSink:
    def __init__(self, client, queue_url: str) -> None:
        self._client = client
        self.queue_url = queue_url

    def record(self, entry: DeadLetterRecord) -> None:
        try:
            self._client.send_message(
                QueueUrl=self.queue_url,
                MessageBody=entry.model_dump_json(),
                MessageAttributes={
                    "error_kind": {
                        "DataType": "String",
                        "StringValue": entry.error_kind.value if entry.error_kind else "unknown",
                    },
                },
            )
        except (ClientError, BotoCoreError) as exc:
            raise TransientIOError(f"dead-letter send to {self.queue_url} failed: {exc}") from exc
        logger.info("Dead-lettered s3://%s/%s: %s", entry.container_id, entry.key, entry.reason)


class LoggingDeadLetterSink:
    """Used when no dead-letter queue is configured; the log is the record."""

    def record(self, entry: DeadLetterRecord) -> None:
        logger.error("Permanently failed object: %s", entry.model_dump_json())


def build_dead_letter_sink(settings: Optional[config.Settings] = None, client=None) -> DeadLetterSink:
    settings = settings or config.get_settings()
    if not settings.dead_letter_queue_url:
        logger.warning("DEAD_LETTER_QUEUE_URL not set; permanent failures will only be logged")
        return LoggingDeadLetterSink()
    client = client or boto3.client("sqs", region_name=settings.aws_region)
    return SqsDeadLetterSink(client, settings.dead_letter_queue_url)
