"""
Data model for the transcoding pipeline.

Plain dataclasses describe the units of work flowing between the consumer,
the orchestrator and the delivery coordinator. The dead-letter record is a
pydantic model because it leaves the process as JSON.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image
from pydantic import BaseModel, Field

from .errors import ErrorKind, PipelineError


class NotificationState(str, Enum):
    """Per-delivery lifecycle; the last three are terminal for one attempt."""

    RECEIVED = "received"
    PROCESSING = "processing"
    ACKNOWLEDGED = "acknowledged"
    AWAITING_REDELIVERY = "awaiting_redelivery"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class ObjectReference:
    container_id: str
    key: str

    @property
    def uri(self) -> str:
        return f"s3://{self.container_id}/{self.key}"


@dataclass
class Notification:
    """
    One unit of work delivered by a consumer.

    `receipt` is whatever the consumer needs to acknowledge the message; the
    pipeline never looks inside it. `object_ref` is None when the message body
    could not be parsed, in which case `parse_error` explains why.
    """

    object_ref: Optional[ObjectReference]
    receipt: Any
    attempt: int = 1
    message_id: Optional[str] = None
    parse_error: Optional[str] = None
    state: NotificationState = NotificationState.RECEIVED


class OutputFormat(Enum):
    JPEG = ("JPEG", "jpg", "image/jpeg")

    def __init__(self, pil_format: str, extension: str, content_type: str) -> None:
        self.pil_format = pil_format
        self.extension = extension
        self.content_type = content_type


@dataclass(frozen=True)
class VariantSpec:
    target_width: int
    output_format: OutputFormat = OutputFormat.JPEG
    key_prefix: str = ""

    def destination_key(self, ref: ObjectReference) -> str:
        """`<prefix><source key>/<width>.<ext>`, unique per (key, width)."""
        return f"{self.key_prefix}{ref.key}/{self.target_width}.{self.output_format.extension}"


@dataclass
class DecodedImage:
    image: Image.Image

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size


@dataclass
class VariantResult:
    spec: VariantSpec
    key: str
    error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Overall(str, Enum):
    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL_FAILURE = "partial_failure"
    TOTAL_FAILURE = "total_failure"


@dataclass
class ProcessingOutcome:
    object_ref: ObjectReference
    per_variant: Dict[VariantSpec, VariantResult]
    overall: Overall
    # Source-level failure (fetch or decode); no variant work was attempted.
    error: Optional[PipelineError] = None

    @property
    def failures(self) -> List[PipelineError]:
        errors = [self.error] if self.error is not None else []
        errors.extend(r.error for r in self.per_variant.values() if r.error is not None)
        return errors

    @property
    def fatal(self) -> bool:
        return any(e.fatal for e in self.failures)

    @property
    def retryable(self) -> bool:
        failures = self.failures
        return any(e.retryable for e in failures) and not any(e.fatal for e in failures)

    @property
    def succeeded_keys(self) -> List[str]:
        return [r.key for r in self.per_variant.values() if r.ok]

    def describe(self) -> str:
        if self.error is not None:
            return str(self.error)
        failed = [f"{r.spec.target_width}: {r.error}" for r in self.per_variant.values() if not r.ok]
        return "; ".join(failed) or self.overall.value


class DeadLetterRecord(BaseModel):
    container_id: Optional[str] = None
    key: Optional[str] = None
    reason: str
    error_kind: Optional[ErrorKind] = None
    attempt: int = 1
    message_id: Optional[str] = None
    variant_errors: Dict[str, str] = Field(default_factory=dict)
    failed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_outcome(cls, notification: Notification, outcome: ProcessingOutcome) -> "DeadLetterRecord":
        failures = outcome.failures
        return cls(
            container_id=outcome.object_ref.container_id,
            key=outcome.object_ref.key,
            reason=outcome.describe(),
            error_kind=failures[0].kind if failures else None,
            attempt=notification.attempt,
            message_id=notification.message_id,
            variant_errors={
                result.key: str(result.error)
                for result in outcome.per_variant.values()
                if result.error is not None
            },
        )
