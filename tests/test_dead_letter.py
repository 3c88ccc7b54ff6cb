import json

import boto3
from botocore.stub import ANY, Stubber
import pytest

from resize_service.config import Settings
from resize_service.dead_letter import LoggingDeadLetterSink, SqsDeadLetterSink, build_dead_letter_sink
from resize_service.errors import CorruptDataError, ErrorKind, TransientIOError
from resize_service.models import DeadLetterRecord, Notification, ObjectReference, Overall, ProcessingOutcome

DLQ_URL = "https://sqs.us-east-1.amazonaws.com/123456789012/resize-dlq"


def _client():
    return boto3.client("sqs", region_name="us-east-1", aws_access_key_id="testing", aws_secret_access_key="testing")


def _record():
    ref = ObjectReference("uploads", "photos/bad.png")
    outcome = ProcessingOutcome(
        object_ref=ref, per_variant={}, overall=Overall.TOTAL_FAILURE, error=CorruptDataError("truncated")
    )
    return DeadLetterRecord.from_outcome(Notification(object_ref=ref, receipt="r", message_id="m-9"), outcome)


def test_record_from_outcome():
    record = _record()
    assert record.key == "photos/bad.png"
    assert record.error_kind is ErrorKind.CORRUPT_DATA
    assert record.message_id == "m-9"
    assert "truncated" in record.reason


def test_sqs_sink_sends_json():
    client = _client()
    record = _record()
    with Stubber(client) as stubber:
        stubber.add_response(
            "send_message",
            {"MessageId": "dlq-1"},
            {"QueueUrl": DLQ_URL, "MessageBody": ANY, "MessageAttributes": ANY},
        )
        SqsDeadLetterSink(client, DLQ_URL).record(record)
        stubber.assert_no_pending_responses()


def test_sqs_sink_failure_is_transient():
    client = _client()
    with Stubber(client) as stubber:
        stubber.add_client_error("send_message", service_error_code="ServiceUnavailable", http_status_code=503)
        with pytest.raises(TransientIOError):
            SqsDeadLetterSink(client, DLQ_URL).record(_record())


def test_record_serialises_to_json():
    payload = json.loads(_record().model_dump_json())
    assert payload["container_id"] == "uploads"
    assert payload["error_kind"] == "corrupt_data"


def test_logging_sink_used_without_queue(caplog):
    sink = build_dead_letter_sink(Settings(_env_file=None, destination_bucket="resized"))
    assert isinstance(sink, LoggingDeadLetterSink)
    with caplog.at_level("ERROR"):
        sink.record(_record())
    assert "photos/bad.png" in caplog.text


def test_sqs_sink_built_from_settings():
    settings = Settings(_env_file=None, destination_bucket="resized", dead_letter_queue_url=DLQ_URL)
    sink = build_dead_letter_sink(settings, client=_client())
    assert isinstance(sink, SqsDeadLetterSink)
    assert sink.queue_url == DLQ_URL
