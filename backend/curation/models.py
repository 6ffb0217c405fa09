import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from curation.db import Base


class DatasetStatus(str, enum.Enum):
    uploading = "uploading"
    validating = "validating"
    classifying = "classifying"
    indexed = "indexed"
    failed = "failed"


class SourceFormat(str, enum.Enum):
    csv = "csv"
    json = "json"


class Difficulty(str, enum.Enum):
    easy = "easy"
    medium = "medium"
    hard = "hard"


class BatchStatus(str, enum.Enum):
    committed = "committed"
    failed = "failed"


MANUAL_MODEL_VERSION = "manual"
SOURCE_MODEL_VERSION = "source"


class Dataset(Base):
    __tablename__ = "datasets"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    source_format: Mapped[SourceFormat] = mapped_column(
        Enum(SourceFormat, name="source_format", create_constraint=True),
        nullable=False,
    )
    status: Mapped[DatasetStatus] = mapped_column(
        Enum(DatasetStatus, name="dataset_status", create_constraint=True),
        default=DatasetStatus.uploading,
        nullable=False,
        index=True,
    )
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    byte_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    question_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    answer_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_batch_start: Mapped[int | None] = mapped_column(Integer, nullable=True)
    failed_batch_end: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retryable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    upload_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    questions: Mapped[list["Question"]] = relationship(back_populates="dataset")
    batches: Mapped[list["IngestBatch"]] = relationship(
        back_populates="dataset",
        order_by="IngestBatch.batch_index",
    )
    bias_reports: Mapped[list["BiasReport"]] = relationship(back_populates="dataset")


class IngestBatch(Base):
    __tablename__ = "ingest_batches"
    __table_args__ = (
        UniqueConstraint("dataset_id", "batch_index", name="uq_ingest_batches_dataset_index"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    dataset_id: Mapped[int] = mapped_column(ForeignKey("datasets.id"), nullable=False, index=True)
    batch_index: Mapped[int] = mapped_column(Integer, nullable=False)
    record_start: Mapped[int] = mapped_column(Integer, nullable=False)
    record_end: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus, name="batch_status", create_constraint=True),
        nullable=False,
    )
    question_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    answer_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    dataset: Mapped["Dataset"] = relationship(back_populates="batches")


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        UniqueConstraint("dataset_id", "external_id", name="uq_questions_dataset_external"),
        Index("idx_questions_dataset_category", "dataset_id", "category"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    dataset_id: Mapped[int] = mapped_column(ForeignKey("datasets.id"), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(80), nullable=True)
    difficulty: Mapped[Difficulty | None] = mapped_column(
        Enum(Difficulty, name="question_difficulty", create_constraint=True),
        nullable=True,
    )
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    dataset: Mapped["Dataset"] = relationship(back_populates="questions")
    answers: Mapped[list["Answer"]] = relationship(back_populates="question")
    classifications: Mapped[list["ClassificationResult"]] = relationship(
        back_populates="question",
        order_by="ClassificationResult.id",
    )


class Answer(Base):
    __tablename__ = "answers"
    __table_args__ = (
        UniqueConstraint("dataset_id", "external_id", name="uq_answers_dataset_external"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    question_id: Mapped[int] = mapped_column(ForeignKey("questions.id"), nullable=False, index=True)
    dataset_id: Mapped[int] = mapped_column(ForeignKey("datasets.id"), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    question: Mapped["Question"] = relationship(back_populates="answers")


class ClassificationResult(Base):
    __tablename__ = "classification_results"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    question_id: Mapped[int] = mapped_column(ForeignKey("questions.id"), nullable=False, index=True)
    category: Mapped[str | None] = mapped_column(String(80), nullable=True)
    difficulty: Mapped[Difficulty | None] = mapped_column(
        Enum(Difficulty, name="classification_difficulty", create_constraint=True),
        nullable=True,
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    model_version: Mapped[str] = mapped_column(String(100), nullable=False)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reviewer: Mapped[str | None] = mapped_column(String(120), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    question: Mapped["Question"] = relationship(back_populates="classifications")


class QuestionIndexEntry(Base):
    __tablename__ = "question_index"
    __table_args__ = (
        Index("idx_question_index_filters", "dataset_id", "category", "difficulty"),
    )

    question_id: Mapped[int] = mapped_column(ForeignKey("questions.id"), primary_key=True)
    dataset_id: Mapped[int] = mapped_column(ForeignKey("datasets.id"), nullable=False, index=True)
    category: Mapped[str | None] = mapped_column(String(80), nullable=True, index=True)
    difficulty: Mapped[str | None] = mapped_column(String(20), nullable=True)
    search_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    indexed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class BiasReport(Base):
    __tablename__ = "bias_reports"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    dataset_id: Mapped[int] = mapped_column(ForeignKey("datasets.id"), nullable=False, index=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    as_of: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    protected_attributes: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    outcome_field: Mapped[str] = mapped_column(String(80), nullable=False)
    label_field: Mapped[str | None] = mapped_column(String(80), nullable=True)
    metrics: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    model_version: Mapped[str] = mapped_column(String(100), nullable=False)
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    snapshot_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    dataset: Mapped["Dataset"] = relationship(back_populates="bias_reports")


class ImmutableRecordError(RuntimeError):
    pass


@event.listens_for(BiasReport, "before_update")
def _reject_bias_report_update(_mapper, _connection, target: BiasReport) -> None:
    raise ImmutableRecordError(f"bias report {target.id} is immutable")


@event.listens_for(ClassificationResult, "before_update")
def _reject_classification_update(_mapper, _connection, target: ClassificationResult) -> None:
    raise ImmutableRecordError(f"classification result {target.id} is append-only")


@event.listens_for(Question, "before_update")
def _reject_question_text_update(_mapper, _connection, target: Question) -> None:
    history = inspect(target).attrs.text.history
    if history.deleted and history.deleted[0] != target.text:
        raise ImmutableRecordError(f"question {target.id} text is immutable")
