"""
Error taxonomy shared by the store client, transcoder and orchestrator.

Every failure the pipeline can observe is raised as a `PipelineError` carrying
an `ErrorKind`. The orchestrator decides acknowledgment from the kind alone.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    TRANSIENT_IO = "transient_io"
    UNSUPPORTED_FORMAT = "unsupported_format"
    CORRUPT_DATA = "corrupt_data"
    ENCODE_ERROR = "encode_error"
    FATAL = "fatal"


class PipelineError(Exception):
    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT_IO

    @property
    def fatal(self) -> bool:
        return self.kind is ErrorKind.FATAL

    def __str__(self) -> str:
        return f"{self.kind.value}: {super().__str__()}"


class ObjectNotFoundError(PipelineError):
    kind = ErrorKind.NOT_FOUND


class TransientIOError(PipelineError):
    kind = ErrorKind.TRANSIENT_IO


class UnsupportedFormatError(PipelineError):
    kind = ErrorKind.UNSUPPORTED_FORMAT


class CorruptDataError(PipelineError):
    kind = ErrorKind.CORRUPT_DATA


class EncodeError(PipelineError):
    kind = ErrorKind.ENCODE_ERROR


class FatalStoreError(PipelineError):
    """Authorization or configuration problem; retrying any object is pointless."""

    kind = ErrorKind.FATAL


class FatalPipelineError(RuntimeError):
    """Raised by the orchestrator to halt processing on a fatal outcome."""

    def __init__(self, message: str, cause: Optional[PipelineError] = None) -> None:
        super().__init__(message)
        self.cause = cause
