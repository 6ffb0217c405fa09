from __future__ import annotations

from typing import Any


INSUFFICIENT_DATA = "insufficient_data"
UNAVAILABLE = "unavailable"


class PipelineError(RuntimeError):
    kind = "pipeline_error"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        dataset_id: int | None = None,
        batch_range: tuple[int, int] | None = None,
        record_number: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.dataset_id = dataset_id
        self.batch_range = batch_range
        self.record_number = record_number

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_kind": self.kind,
            "dataset_id": self.dataset_id,
            "batch_range": list(self.batch_range) if self.batch_range else None,
            "record_number": self.record_number,
            "retryable": self.retryable,
            "detail": self.message,
        }


class SchemaViolation(PipelineError):
    kind = "schema_violation"


class ValidationError(PipelineError):
    kind = "validation_error"


class OrphanAnswerError(ValidationError):
    kind = "orphan_answer"


class ErrorRateExceeded(ValidationError):
    kind = "error_rate_exceeded"


class ClassifierUnavailable(PipelineError):
    kind = "classifier_unavailable"
    retryable = True


class IndexTimeout(PipelineError):
    kind = "index_timeout"
    retryable = True


class DatasetBusy(PipelineError):
    kind = "dataset_busy"
    retryable = True


class UnsupportedFormat(PipelineError):
    kind = "unsupported_format"


class MalformedUpload(PipelineError):
    kind = "malformed_upload"


class InvalidStatusTransition(PipelineError):
    kind = "invalid_status_transition"


class ResumeMismatch(PipelineError):
    kind = "resume_mismatch"


class IngestInterrupted(PipelineError):
    kind = "interrupted"
    retryable = True


class UnexpectedIngestError(PipelineError):
    kind = "internal_error"
    retryable = True


class NotFoundError(PipelineError):
    kind = "not_found"
