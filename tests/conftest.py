from __future__ import annotations

from io import BytesIO
import json
from threading import Event, Lock
from typing import Dict, List, Optional, Tuple

from PIL import Image
import pytest

from resize_service.errors import ObjectNotFoundError, PipelineError
from resize_service.models import Notification, ObjectReference, VariantSpec
from resize_service.pipeline import ObjectProcessor
from resize_service.transcoder import Transcoder

SOURCE_BUCKET = "uploads"
DESTINATION_BUCKET = "resized"


def make_image_bytes(width: int, height: int, fmt: str = "PNG", mode: str = "RGB", color=None) -> bytes:
    if color is None:
        color = (200, 40, 90, 255) if mode == "RGBA" else (200, 40, 90)
    image = Image.new(mode, (width, height), color)
    if mode in ("RGB", "RGBA"):
        # Gradient stripes so resizes are not trivially uniform.
        alpha = (255,) if mode == "RGBA" else ()
        for x in range(0, width, max(1, width // 16)):
            for y in range(height):
                image.putpixel((x, y), (x % 256, y % 256, 120) + alpha)
    buf = BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


def s3_event_body(bucket: str, key: str) -> str:
    return json.dumps(
        {
            "Records": [
                {
                    "eventVersion": "2.1",
                    "eventSource": "aws:s3",
                    "eventName": "ObjectCreated:Put",
                    "s3": {
                        "s3SchemaVersion": "1.0",
                        "bucket": {"name": bucket, "arn": f"arn:aws:s3:::{bucket}"},
                        "object": {"key": key, "size": 1024},
                    },
                }
            ]
        }
    )


class InMemoryObjectStore:
    """Object store double; `put_failures` maps a key to errors raised on successive puts."""

    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.puts: List[dict] = []
        self.fetches: List[ObjectReference] = []
        self.fetch_error: Optional[PipelineError] = None
        self.put_failures: Dict[str, List[PipelineError]] = {}
        self._lock = Lock()

    def add(self, bucket: str, key: str, data: bytes) -> None:
        self.objects[(bucket, key)] = data

    def fetch(self, ref: ObjectReference) -> bytes:
        with self._lock:
            self.fetches.append(ref)
        if self.fetch_error is not None:
            raise self.fetch_error
        try:
            return self.objects[(ref.container_id, ref.key)]
        except KeyError:
            raise ObjectNotFoundError(f"get {ref.uri} failed (NoSuchKey)") from None

    def put(self, container_id, key, data, *, content_type, public_read=False, cache_control=None) -> None:
        with self._lock:
            pending = self.put_failures.get(key)
            if pending:
                raise pending.pop(0)
            self.puts.append(
                {
                    "bucket": container_id,
                    "key": key,
                    "content_type": content_type,
                    "public_read": public_read,
                    "cache_control": cache_control,
                }
            )
            self.objects[(container_id, key)] = data

    def keys(self, bucket: str) -> List[str]:
        return sorted(key for (b, key) in self.objects if b == bucket)


class FakeConsumer:
    def __init__(self, notifications: List[Notification], stop_event: Optional[Event] = None) -> None:
        self.pending = list(notifications)
        self.stop_event = stop_event
        self.requested: List[int] = []
        self.acked: List[Notification] = []
        self.released: List[Tuple[Notification, int]] = []
        self.receive_error: Optional[Exception] = None
        self.ack_error: Optional[Exception] = None
        self._lock = Lock()

    def receive(self, max_messages: int) -> List[Notification]:
        self.requested.append(max_messages)
        if self.receive_error is not None:
            raise self.receive_error
        batch, self.pending = self.pending[:max_messages], self.pending[max_messages:]
        if not batch and self.stop_event is not None:
            self.stop_event.set()
        return batch

    def ack(self, notification: Notification) -> None:
        if self.ack_error is not None:
            raise self.ack_error
        with self._lock:
            self.acked.append(notification)

    def release(self, notification: Notification, delay_seconds: int) -> None:
        with self._lock:
            self.released.append((notification, delay_seconds))


class RecordingDeadLetterSink:
    def __init__(self) -> None:
        self.entries = []
        self.error: Optional[PipelineError] = None

    def record(self, entry) -> None:
        if self.error is not None:
            raise self.error
        self.entries.append(entry)


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def specs() -> List[VariantSpec]:
    return [VariantSpec(target_width=w) for w in (100, 500, 1000)]


@pytest.fixture
def processor(store, specs) -> ObjectProcessor:
    return ObjectProcessor(store, Transcoder(), specs, DESTINATION_BUCKET)


@pytest.fixture
def dead_letter() -> RecordingDeadLetterSink:
    return RecordingDeadLetterSink()


@pytest.fixture
def cat_ref(store) -> ObjectReference:
    store.add(SOURCE_BUCKET, "photos/cat.png", make_image_bytes(2000, 1000))
    return ObjectReference(container_id=SOURCE_BUCKET, key="photos/cat.png")
