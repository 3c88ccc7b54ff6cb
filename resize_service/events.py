"""
S3 event notification envelope.

Only the bucket name and object key are consumed; everything else in the
envelope (timestamps, request ids, identities) is ignored.
"""

from __future__ import annotations

import json
import logging
from typing import List, Optional
from urllib.parse import unquote_plus

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import ObjectReference

logger = logging.getLogger(__name__)

TEST_EVENT = "s3:TestEvent"


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class S3Bucket(_Envelope):
    name: str


class S3Object(_Envelope):
    key: str
    size: Optional[int] = None


class S3Entity(_Envelope):
    bucket: S3Bucket
    object: S3Object


class S3EventRecord(_Envelope):
    event_name: Optional[str] = Field(None, alias="eventName")
    s3: S3Entity


class S3Event(_Envelope):
    records: List[S3EventRecord] = Field(default_factory=list, alias="Records")
    event: Optional[str] = Field(None, alias="Event")


class MalformedNotification(ValueError):
    """The message body is not an S3 event notification."""


def parse_object_refs(body: str) -> List[ObjectReference]:
    """
    Extract object references from an S3 event notification body.

    Keys arrive URL-encoded (spaces as ``+``) and are decoded here.
    Test events and empty envelopes yield no references.
    """
    try:
        payload = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise MalformedNotification(f"body is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedNotification("body is not a JSON object")
    try:
        event = S3Event.model_validate(payload)
    except ValidationError as exc:
        raise MalformedNotification(f"not an S3 event: {exc.error_count()} validation errors") from exc

    if event.event == TEST_EVENT:
        logger.info("Ignoring %s", TEST_EVENT)
        return []
    return [
        ObjectReference(container_id=record.s3.bucket.name, key=unquote_plus(record.s3.object.key))
        for record in event.records
    ]


def parse_object_ref(body: str) -> Optional[ObjectReference]:
    """Return the single object a notification refers to, or None for test events."""
    refs = parse_object_refs(body)
    if not refs:
        return None
    if len(refs) > 1:
        logger.warning("Notification carries %d records; processing only %s", len(refs), refs[0].uri)
    return refs[0]
