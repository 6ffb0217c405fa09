from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from curation.models import BatchStatus, DatasetStatus, Difficulty, SourceFormat


class DatasetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    fingerprint: str
    source_format: SourceFormat
    status: DatasetStatus
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="meta")
    byte_size: int
    question_count: int
    answer_count: int
    skipped_count: int
    error_kind: str | None = None
    error_detail: str | None = None
    failed_batch_start: int | None = None
    failed_batch_end: int | None = None
    retryable: bool = False
    upload_timestamp: datetime
    completed_at: datetime | None = None
    updated_at: datetime


class IngestBatchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    dataset_id: int
    batch_index: int
    record_start: int
    record_end: int
    status: BatchStatus
    question_count: int
    answer_count: int
    skipped_count: int
    error_kind: str | None = None
    error_detail: str | None = None
    created_at: datetime


class QuestionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    dataset_id: int
    external_id: str
    text: str
    category: str | None = None
    difficulty: Difficulty | None = None
    needs_review: bool
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="meta")
    created_at: datetime
    updated_at: datetime


class AnswerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    question_id: int
    dataset_id: int
    external_id: str
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="meta")
    created_at: datetime


class ClassificationResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    question_id: int
    category: str | None = None
    difficulty: Difficulty | None = None
    confidence: float
    model_version: str
    needs_review: bool
    reviewer: str | None = None
    note: str | None = None
    created_at: datetime


class ClassificationOverrideOut(ClassificationResultOut):
    index_pending: bool = False


class ClassificationOverrideRequest(BaseModel):
    category: str | None = Field(default=None, max_length=80)
    difficulty: Difficulty | None = None
    reviewer: str | None = Field(default=None, max_length=120)
    note: str | None = Field(default=None, max_length=2000)


class SearchHitOut(BaseModel):
    question: QuestionOut
    relevance: float


class SearchPageOut(BaseModel):
    items: list[SearchHitOut]
    total: int
    page: int
    page_size: int


class BiasReportRequest(BaseModel):
    protected_attributes: list[str] = Field(min_length=1, max_length=20)
    outcome_field: str | None = Field(default=None, max_length=80)
    label_field: str | None = Field(default=None, max_length=80)
    as_of: datetime | None = None

    @field_validator("protected_attributes")
    @classmethod
    def validate_attributes(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        if not cleaned:
            raise ValueError("protected_attributes must contain at least one name")
        return cleaned


class BiasReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    dataset_id: int
    generated_at: datetime
    as_of: datetime
    protected_attributes: list[str]
    outcome_field: str
    label_field: str | None = None
    metrics: dict[str, Any]
    model_version: str
    sample_size: int
    snapshot_fingerprint: str


class ReindexResult(BaseModel):
    dataset_id: int
    stats: dict[str, int]


class PipelineErrorOut(BaseModel):
    error_kind: str
    dataset_id: int | None = None
    batch_range: list[int] | None = None
    record_number: int | None = None
    retryable: bool = False
    detail: str
