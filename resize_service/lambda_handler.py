"""
Function-invocation entry point for SQS-triggered deployments.

Each invocation receives exactly one batch. Records that were not
acknowledged are returned as `batchItemFailures` so only those are
redelivered (requires ReportBatchItemFailures on the event source mapping).
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Dict, Optional

from . import config
from .consumers import LambdaBatchConsumer
from .queue_worker import PipelineOrchestrator

logger = logging.getLogger(__name__)

_ORCHESTRATOR: Optional[PipelineOrchestrator] = None
_LOCK = Lock()


def build_orchestrator() -> PipelineOrchestrator:
    settings = config.get_settings()
    config.configure_logging(settings)
    return PipelineOrchestrator.from_settings(settings)


def get_orchestrator() -> PipelineOrchestrator:
    """Build collaborators once per execution environment and reuse them."""
    global _ORCHESTRATOR
    if _ORCHESTRATOR is not None:
        return _ORCHESTRATOR
    with _LOCK:
        if _ORCHESTRATOR is None:
            _ORCHESTRATOR = build_orchestrator()
    return _ORCHESTRATOR


def set_orchestrator(orchestrator: Optional[PipelineOrchestrator]) -> None:
    global _ORCHESTRATOR
    _ORCHESTRATOR = orchestrator


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Process one SQS batch.

    A fatal failure propagates so the whole batch is retried by the platform
    instead of being partially acknowledged.
    """
    consumer = LambdaBatchConsumer(event)
    notifications = consumer.receive()
    logger.info("Invocation received %d notifications", len(notifications))
    get_orchestrator().run_batch(notifications, consumer)
    failures = consumer.batch_item_failures()
    if failures:
        logger.warning("%d of %d notifications left for redelivery", len(failures), len(notifications))
    return {"batchItemFailures": failures}
