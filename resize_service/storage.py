"""
Thin S3 client for fetching originals and writing variants.

No retry decisions are made here beyond botocore's own transport retries;
every failure is mapped onto the pipeline error taxonomy and raised.
"""

from __future__ import annotations

import logging
from typing import Optional

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError, PartialCredentialsError

from . import config
from .errors import FatalStoreError, ObjectNotFoundError, PipelineError, TransientIOError
from .models import ObjectReference

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
_TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "SlowDown",
    "RequestTimeout",
    "RequestTimeoutException",
    "InternalError",
    "ServiceUnavailable",
    "RequestLimitExceeded",
}


def classify_client_error(exc: ClientError, action: str) -> PipelineError:
    """Translate a botocore ClientError into a pipeline error."""
    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
    message = f"{action} failed ({code or status}): {error.get('Message', exc)}"
    if code in _NOT_FOUND_CODES:
        return ObjectNotFoundError(message)
    if code in _TRANSIENT_CODES or status >= 500 or status == 429:
        return TransientIOError(message)
    return FatalStoreError(message)


def classify_botocore_error(exc: BotoCoreError, action: str) -> PipelineError:
    message = f"{action} failed: {exc}"
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return FatalStoreError(message)
    # Connection resets, read timeouts, endpoint errors.
    return TransientIOError(message)


def build_s3_client(settings: Optional[config.Settings] = None):
    settings = settings or config.get_settings()
    session = boto3.session.Session(
        aws_access_key_id=settings.s3_access_key_id,
        aws_secret_access_key=settings.s3_secret_access_key,
        region_name=settings.aws_region,
    )
    return session.client(
        service_name="s3",
        endpoint_url=settings.s3_endpoint_url,
        config=BotoConfig(
            signature_version="s3v4",
            read_timeout=settings.request_timeout_seconds,
            retries={"mode": "standard"},
        ),
    )


class S3ObjectStore:
    """Key/blob access to S3 (or any S3-compatible endpoint)."""

    def __init__(self, client) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "S3ObjectStore":
        return cls(build_s3_client(settings))

    def fetch(self, ref: ObjectReference) -> bytes:
        action = f"get {ref.uri}"
        try:
            response = self._client.get_object(Bucket=ref.container_id, Key=ref.key)
            body = response["Body"]
            try:
                return body.read()
            finally:
                body.close()
        except ClientError as exc:
            raise classify_client_error(exc, action) from exc
        except BotoCoreError as exc:
            raise classify_botocore_error(exc, action) from exc

    def put(
        self,
        container_id: str,
        key: str,
        data: bytes,
        *,
        content_type: str,
        public_read: bool = False,
        cache_control: Optional[str] = None,
    ) -> None:
        params = {
            "Bucket": container_id,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if public_read:
            params["ACL"] = "public-read"
        if cache_control:
            params["CacheControl"] = cache_control
        action = f"put s3://{container_id}/{key}"
        try:
            self._client.put_object(**params)
        except ClientError as exc:
            raise classify_client_error(exc, action) from exc
        except BotoCoreError as exc:
            raise classify_botocore_error(exc, action) from exc
        logger.debug("Uploaded s3://%s/%s (%d bytes)", container_id, key, len(data))
