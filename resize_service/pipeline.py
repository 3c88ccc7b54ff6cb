"""
High-level variant delivery for one uploaded object.

`process_object` is the single entry point shared by the queue poller and the
function-invocation handler. It keeps orchestration simple:
fetch -> decode once -> (resize -> encode -> put) per variant -> outcome.

Variants are isolated from each other: one failing upload never stops the
remaining variants from being written.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from . import config
from .errors import CorruptDataError, EncodeError, PipelineError, TransientIOError
from .models import (
    DecodedImage,
    ObjectReference,
    Overall,
    ProcessingOutcome,
    VariantResult,
    VariantSpec,
)
from .storage import S3ObjectStore
from .transcoder import Transcoder

logger = logging.getLogger(__name__)


def aggregate_overall(results: Iterable[VariantResult]) -> Overall:
    results = list(results)
    errors = [r.error for r in results if r.error is not None]
    if not errors:
        return Overall.ALL_SUCCEEDED
    if len(errors) == len(results) and not any(e.retryable for e in errors):
        return Overall.TOTAL_FAILURE
    return Overall.PARTIAL_FAILURE


def _deliver_variant(
    decoded: DecodedImage,
    ref: ObjectReference,
    spec: VariantSpec,
    *,
    store,
    transcoder,
    destination_bucket: str,
    public_read: bool,
    cache_control: Optional[str],
) -> VariantResult:
    key = spec.destination_key(ref)
    try:
        try:
            resized = transcoder.resize(decoded, spec.target_width)
            data = transcoder.encode(resized, spec.output_format)
        except PipelineError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise EncodeError(f"transcoding to width {spec.target_width} failed: {exc}") from exc
        store.put(
            destination_bucket,
            key,
            data,
            content_type=spec.output_format.content_type,
            public_read=public_read,
            cache_control=cache_control,
        )
    except EncodeError as exc:
        # A defect in the transcoder, not the input; operators need the trace.
        logger.exception("Encoding variant %s of %s failed", spec.target_width, ref.uri)
        return VariantResult(spec=spec, key=key, error=exc)
    except PipelineError as exc:
        logger.warning("Variant %s of %s failed: %s", spec.target_width, ref.uri, exc)
        return VariantResult(spec=spec, key=key, error=exc)
    logger.info("Wrote s3://%s/%s", destination_bucket, key)
    return VariantResult(spec=spec, key=key)


def process_object(
    ref: ObjectReference,
    specs: Iterable[VariantSpec],
    *,
    store,
    transcoder,
    destination_bucket: str,
    public_read: bool = False,
    cache_control: Optional[str] = None,
) -> ProcessingOutcome:
    """
    Produce and upload every variant of `ref`.

    Store and transcoder failures never escape; they are classified and
    reported in the returned outcome for the orchestrator to act on.
    """
    specs = list(specs)
    try:
        data = store.fetch(ref)
    except PipelineError as exc:
        logger.warning("Fetching %s failed: %s", ref.uri, exc)
        return ProcessingOutcome(object_ref=ref, per_variant={}, overall=Overall.TOTAL_FAILURE, error=exc)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected error fetching %s", ref.uri)
        error = TransientIOError(f"fetching {ref.uri} failed: {exc}")
        return ProcessingOutcome(object_ref=ref, per_variant={}, overall=Overall.TOTAL_FAILURE, error=error)

    try:
        decoded = transcoder.decode(data)
    except PipelineError as exc:
        logger.warning("Decoding %s failed: %s", ref.uri, exc)
        return ProcessingOutcome(object_ref=ref, per_variant={}, overall=Overall.TOTAL_FAILURE, error=exc)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected error decoding %s", ref.uri)
        error = CorruptDataError(f"decoding {ref.uri} failed: {exc}")
        return ProcessingOutcome(object_ref=ref, per_variant={}, overall=Overall.TOTAL_FAILURE, error=error)
    logger.debug("Decoded %s: %dx%d", ref.uri, decoded.width, decoded.height)

    per_variant: Dict[VariantSpec, VariantResult] = {}
    for spec in specs:
        per_variant[spec] = _deliver_variant(
            decoded,
            ref,
            spec,
            store=store,
            transcoder=transcoder,
            destination_bucket=destination_bucket,
            public_read=public_read,
            cache_control=cache_control,
        )

    return ProcessingOutcome(
        object_ref=ref,
        per_variant=per_variant,
        overall=aggregate_overall(per_variant.values()),
    )


class ObjectProcessor:
    """Binds the store, transcoder and variant catalog for the orchestrator."""

    def __init__(
        self,
        store,
        transcoder,
        specs: Iterable[VariantSpec],
        destination_bucket: str,
        *,
        public_read: bool = False,
        cache_control: Optional[str] = None,
    ) -> None:
        self.store = store
        self.transcoder = transcoder
        self.specs = list(specs)
        self.destination_bucket = destination_bucket
        self.public_read = public_read
        self.cache_control = cache_control

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None, store=None) -> "ObjectProcessor":
        settings = settings or config.get_settings()
        return cls(
            store=store or S3ObjectStore.from_settings(settings),
            transcoder=Transcoder(quality=settings.jpeg_quality),
            specs=settings.variant_specs(),
            destination_bucket=settings.destination_bucket,
            public_read=settings.public_read,
            cache_control=settings.cache_control,
        )

    def __call__(self, ref: ObjectReference) -> ProcessingOutcome:
        return process_object(
            ref,
            self.specs,
            store=self.store,
            transcoder=self.transcoder,
            destination_bucket=self.destination_bucket,
            public_read=self.public_read,
            cache_control=self.cache_control,
        )
