from __future__ import annotations

from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import IO, Any, Callable, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from curation import models
from curation.core.classifier import ClassifierService, Prediction, get_classifier_service
from curation.core.config import settings
from curation.core.db_read_write import WriteSessionLocal
from curation.core.errors import (
    ErrorRateExceeded,
    IngestInterrupted,
    InvalidStatusTransition,
    MalformedUpload,
    OrphanAnswerError,
    PipelineError,
    ResumeMismatch,
    SchemaViolation,
    UnexpectedIngestError,
    ValidationError,
)
from curation.core.locks import dataset_locks, fingerprint_key
from curation.core.search_index import IndexTicket, IndexWorker, get_index_worker
from curation.core.upload_parser import (
    MalformedRecord,
    RecordBatch,
    SpooledUpload,
    iter_batches,
    iter_records,
    parse_source_format,
    spool_upload,
)
from curation.core.validation import (
    ANSWER_KIND,
    QUESTION_KIND,
    ValidatedAnswer,
    ValidatedQuestion,
    assert_separation,
    collect_metadata,
    record_kind,
    validate_answer,
    validate_question,
)


logger = logging.getLogger(__name__)

Status = models.DatasetStatus

ALLOWED_TRANSITIONS: dict[models.DatasetStatus, set[models.DatasetStatus]] = {
    Status.uploading: {Status.validating, Status.failed},
    Status.validating: {Status.classifying, Status.indexed, Status.failed},
    Status.classifying: {Status.indexed, Status.failed},
    Status.indexed: set(),
    Status.failed: {Status.uploading},
}

ACTIVE_STATUSES = (Status.uploading, Status.validating, Status.classifying)

LOOKUP_CHUNK_SIZE = 500
REINDEX_CHUNK_SIZE = 5000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def transition(db: Session, dataset: models.Dataset, target: models.DatasetStatus, **fields: Any) -> None:
    current = dataset.status
    if current != target and target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(
            f"dataset {dataset.id} cannot move from {current.value} to {target.value}",
            dataset_id=dataset.id,
        )
    dataset.status = target
    for key, value in fields.items():
        setattr(dataset, key, value)
    db.add(dataset)
    db.commit()
    if current != target:
        logger.info("dataset %s status: %s -> %s", dataset.id, current.value, target.value)


@dataclass(slots=True)
class PreparedBatch:
    batch: RecordBatch
    questions: list[ValidatedQuestion] = field(default_factory=list)
    answers: list[ValidatedAnswer] = field(default_factory=list)
    skipped: list[tuple[int, str]] = field(default_factory=list)


@dataclass(slots=True)
class _RunState:
    dataset_id: int
    pending_questions: dict[int, set[str]] = field(default_factory=dict)
    pending_answers: dict[int, set[str]] = field(default_factory=dict)
    tickets: list[IndexTicket] = field(default_factory=list)

    def pending_question_ids(self) -> set[str]:
        return set().union(*self.pending_questions.values()) if self.pending_questions else set()

    def pending_answer_ids(self) -> set[str]:
        return set().union(*self.pending_answers.values()) if self.pending_answers else set()

    def release(self, batch_index: int) -> None:
        self.pending_questions.pop(batch_index, None)
        self.pending_answers.pop(batch_index, None)


def _chunks(values: list[str], size: int) -> list[list[str]]:
    return [values[idx : idx + size] for idx in range(0, len(values), size)]


def _existing_external_ids(db: Session, column, dataset_column, dataset_id: int, values: set[str]) -> set[str]:
    found: set[str] = set()
    for chunk in _chunks(sorted(values), LOOKUP_CHUNK_SIZE):
        rows = db.query(column).filter(dataset_column == dataset_id, column.in_(chunk)).all()
        found.update(row[0] for row in rows)
    return found


def mark_failed(db: Session, dataset: models.Dataset, failure: PipelineError) -> None:
    failure.dataset_id = dataset.id
    start, end = failure.batch_range if failure.batch_range else (None, None)
    transition(
        db,
        dataset,
        Status.failed,
        error_kind=failure.kind,
        error_detail=failure.message[:2000],
        failed_batch_start=start,
        failed_batch_end=end,
        retryable=failure.retryable,
        completed_at=utc_now(),
    )
    logger.error(
        "dataset %s failed: kind=%s batch_range=%s detail=%s",
        dataset.id,
        failure.kind,
        failure.batch_range,
        failure.message,
    )


def _interrupted(dataset: models.Dataset) -> IngestInterrupted:
    return IngestInterrupted(
        f"ingestion of dataset {dataset.id} stopped while {dataset.status.value}",
        dataset_id=dataset.id,
    )


def recover_interrupted(session_factory: Callable[[], Session] = WriteSessionLocal) -> list[int]:
    """Fail datasets left mid-ingestion by a previous process so they can be retried."""
    db = session_factory()
    try:
        recovered: list[int] = []
        stuck = (
            db.query(models.Dataset)
            .filter(models.Dataset.status.in_(ACTIVE_STATUSES))
            .order_by(models.Dataset.id.asc())
            .all()
        )
        for dataset in stuck:
            if dataset_locks.is_held(dataset.id) or dataset_locks.is_held(fingerprint_key(dataset.fingerprint)):
                continue
            mark_failed(db, dataset, _interrupted(dataset))
            recovered.append(dataset.id)
        return recovered
    finally:
        db.close()


def merge_labels(question: ValidatedQuestion, prediction: Prediction) -> tuple[str | None, models.Difficulty | None, bool]:
    if question.has_source_labels:
        return (
            question.category or prediction.category,
            question.difficulty or prediction.difficulty,
            False,
        )
    return prediction.category, prediction.difficulty, prediction.needs_review


class IngestionPipeline:
    def __init__(
        self,
        *,
        classifier: ClassifierService | None = None,
        index_worker: IndexWorker | None = None,
        session_factory: Callable[[], Session] = WriteSessionLocal,
        batch_size: int | None = None,
        max_workers: int | None = None,
        max_error_rate: float | None = None,
        index_timeout: float | None = None,
    ) -> None:
        self.classifier = classifier or get_classifier_service()
        self.index_worker = index_worker or get_index_worker()
        self._session_factory = session_factory
        self.batch_size = max(1, batch_size or settings.INGEST_BATCH_SIZE)
        self.max_workers = max(1, max_workers or settings.INGEST_MAX_WORKERS)
        self.max_error_rate = settings.INGEST_MAX_ERROR_RATE if max_error_rate is None else max_error_rate
        self.index_timeout = settings.INDEX_ACK_TIMEOUT_SECONDS if index_timeout is None else index_timeout

    def ingest(
        self,
        upload_stream: IO[bytes] | bytes,
        source_format: str | models.SourceFormat,
        *,
        name: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> models.Dataset:
        fmt = parse_source_format(source_format)
        dataset_meta = collect_metadata({"metadata": dict(metadata or {})}, frozenset())
        spooled = spool_upload(upload_stream)
        try:
            with dataset_locks.hold(fingerprint_key(spooled.fingerprint)):
                dataset, should_run = self._open_dataset(spooled, fmt, name=name, metadata=dataset_meta)
                if not should_run:
                    logger.info(
                        "upload already ingested: dataset_id=%s fingerprint=%s status=%s",
                        dataset.id,
                        spooled.fingerprint[:12],
                        dataset.status.value,
                    )
                    return dataset
                with dataset_locks.hold(dataset.id):
                    return self._run(dataset.id, spooled, fmt)
        finally:
            spooled.close()

    def _open_dataset(
        self,
        spooled: SpooledUpload,
        fmt: models.SourceFormat,
        *,
        name: str | None,
        metadata: dict[str, Any],
    ) -> tuple[models.Dataset, bool]:
        db = self._session_factory()
        try:
            existing = (
                db.query(models.Dataset)
                .filter(models.Dataset.fingerprint == spooled.fingerprint)
                .first()
            )
            if existing:
                if existing.status == Status.indexed:
                    return existing, False
                if existing.status in ACTIVE_STATUSES:
                    # the fingerprint lock is ours, so no run in this process owns it
                    mark_failed(db, existing, _interrupted(existing))
                logger.info("retrying failed dataset %s (last error: %s)", existing.id, existing.error_kind)
                transition(
                    db,
                    existing,
                    Status.uploading,
                    error_kind=None,
                    error_detail=None,
                    failed_batch_start=None,
                    failed_batch_end=None,
                    retryable=False,
                    completed_at=None,
                )
                return existing, True

            dataset = models.Dataset(
                name=(name or "").strip()[:255] or f"upload-{spooled.fingerprint[:12]}",
                fingerprint=spooled.fingerprint,
                source_format=fmt,
                status=Status.uploading,
                meta=metadata,
                byte_size=spooled.byte_size,
            )
            db.add(dataset)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = (
                    db.query(models.Dataset)
                    .filter(models.Dataset.fingerprint == spooled.fingerprint)
                    .first()
                )
                if existing is None:
                    raise
                return existing, False
            db.refresh(dataset)
            logger.info("dataset %s created: fingerprint=%s bytes=%s", dataset.id, spooled.fingerprint[:12], spooled.byte_size)
            return dataset, True
        finally:
            db.close()

    def _run(self, dataset_id: int, spooled: SpooledUpload, fmt: models.SourceFormat) -> models.Dataset:
        db = self._session_factory()
        try:
            dataset = db.get(models.Dataset, dataset_id)
            committed = {
                row.batch_index: row
                for row in db.query(models.IngestBatch)
                .filter(
                    models.IngestBatch.dataset_id == dataset_id,
                    models.IngestBatch.status == models.BatchStatus.committed,
                )
                .all()
            }
            db.query(models.IngestBatch).filter(
                models.IngestBatch.dataset_id == dataset_id,
                models.IngestBatch.status == models.BatchStatus.failed,
            ).delete(synchronize_session=False)
            db.commit()

            transition(db, dataset, Status.validating)
            state = _RunState(dataset_id=dataset_id)
            failure: PipelineError | None = None
            try:
                if committed:
                    state.tickets.extend(self._reindex_committed(db, dataset_id))
                self._process_batches(db, dataset, spooled, fmt, committed, state)
                self._await_index(state)
            except PipelineError as error:
                failure = error
            except Exception as error:  # noqa: BLE001
                logger.exception("ingestion of dataset %s failed unexpectedly", dataset_id)
                failure = UnexpectedIngestError(str(error)[:1000], dataset_id=dataset_id)

            db.refresh(dataset)
            if failure is None:
                transition(db, dataset, Status.indexed, completed_at=utc_now())
                logger.info(
                    "dataset %s indexed: questions=%s answers=%s skipped=%s",
                    dataset.id,
                    dataset.question_count,
                    dataset.answer_count,
                    dataset.skipped_count,
                )
            else:
                mark_failed(db, dataset, failure)
            db.refresh(dataset)
            return dataset
        finally:
            db.close()

    def _process_batches(
        self,
        db: Session,
        dataset: models.Dataset,
        spooled: SpooledUpload,
        fmt: models.SourceFormat,
        committed: dict[int, models.IngestBatch],
        state: _RunState,
    ) -> None:
        spooled.rewind()
        batches = iter_batches(iter_records(spooled.file, fmt), self.batch_size)
        in_flight: deque[tuple[PreparedBatch, Future]] = deque()
        next_start = 1
        next_index = 0
        seen_any = False
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ingest-classify")
        try:
            while True:
                try:
                    batch = next(batches, None)
                except MalformedUpload as error:
                    error.dataset_id = state.dataset_id
                    error.batch_range = (next_start, next_start + self.batch_size - 1)
                    self._drain(in_flight, state)
                    self._record_failed_batch(state.dataset_id, next_index, error)
                    raise
                if batch is None:
                    break
                seen_any = True
                next_start = batch.end + 1
                next_index = batch.index + 1

                ledger = committed.get(batch.index)
                if ledger is not None:
                    if (ledger.record_start, ledger.record_end) != batch.record_range:
                        raise ResumeMismatch(
                            f"batch {batch.index} covered records {ledger.record_start}-{ledger.record_end} "
                            f"before, now {batch.start}-{batch.end}",
                            dataset_id=state.dataset_id,
                            batch_range=batch.record_range,
                        )
                    continue

                try:
                    prepared = self._prepare(db, batch, state)
                except PipelineError as error:
                    error.dataset_id = state.dataset_id
                    error.batch_range = batch.record_range
                    self._drain(in_flight, state)
                    self._record_failed_batch(state.dataset_id, batch.index, error)
                    raise

                if dataset.status == Status.validating:
                    transition(db, dataset, Status.classifying)
                in_flight.append((prepared, pool.submit(self._classify, prepared)))
                while len(in_flight) >= self.max_workers:
                    self._commit_next(in_flight, state)

            self._drain(in_flight, state)
        except BaseException:
            for _, future in in_flight:
                future.cancel()
            raise
        finally:
            pool.shutdown(wait=True)

        if not seen_any:
            raise MalformedUpload("upload contains no records", dataset_id=state.dataset_id, batch_range=(1, 1))

    def _prepare(self, db: Session, batch: RecordBatch, state: _RunState) -> PreparedBatch:
        assert_separation(batch.records, first_record_number=batch.start)

        prepared = PreparedBatch(batch=batch)
        answer_records: list[tuple[int, Mapping[str, Any]]] = []
        batch_question_ids: set[str] = set()
        for offset, record in enumerate(batch.records):
            record_number = batch.start + offset
            if isinstance(record, MalformedRecord):
                prepared.skipped.append((record_number, record.detail))
                continue
            if not isinstance(record, Mapping):
                prepared.skipped.append((record_number, "record must be an object"))
                continue
            kind = record_kind(record)
            if kind == ANSWER_KIND:
                answer_records.append((record_number, record))
                continue
            if kind != QUESTION_KIND:
                prepared.skipped.append((record_number, "unknown record_type"))
                continue
            try:
                question = validate_question(record, record_number=record_number)
            except SchemaViolation:
                raise
            except ValidationError as error:
                prepared.skipped.append((record_number, error.message))
                continue
            if question.external_id in batch_question_ids:
                prepared.skipped.append((record_number, f"duplicate question id {question.external_id}"))
                continue
            batch_question_ids.add(question.external_id)
            prepared.questions.append(question)

        self._drop_existing_questions(db, prepared, state)
        known_ids = {question.external_id for question in prepared.questions} | state.pending_question_ids()
        references = {
            str(record.get("question_id")).strip()
            for _, record in answer_records
            if record.get("question_id") is not None
        }
        unresolved = references - known_ids
        if unresolved:
            known_ids |= _existing_external_ids(
                db,
                models.Question.external_id,
                models.Question.dataset_id,
                state.dataset_id,
                unresolved,
            )

        batch_answer_ids: set[str] = set()
        for record_number, record in answer_records:
            try:
                answer = validate_answer(record, known_ids, record_number=record_number)
            except OrphanAnswerError:
                raise
            except SchemaViolation:
                raise
            except ValidationError as error:
                prepared.skipped.append((record_number, error.message))
                continue
            if answer.external_id in batch_answer_ids:
                prepared.skipped.append((record_number, f"duplicate answer id {answer.external_id}"))
                continue
            batch_answer_ids.add(answer.external_id)
            prepared.answers.append(answer)
        self._drop_existing_answers(db, prepared, state)

        for record_number, detail in prepared.skipped:
            logger.warning("dataset %s record %s skipped: %s", state.dataset_id, record_number, detail)
        total = len(batch.records)
        if total and len(prepared.skipped) / total > self.max_error_rate:
            raise ErrorRateExceeded(
                f"{len(prepared.skipped)} of {total} records invalid "
                f"(limit {self.max_error_rate:.0%}); first: record {prepared.skipped[0][0]}: {prepared.skipped[0][1]}",
                record_number=prepared.skipped[0][0],
            )

        state.pending_questions[batch.index] = {question.external_id for question in prepared.questions}
        state.pending_answers[batch.index] = {answer.external_id for answer in prepared.answers}
        return prepared

    def _drop_existing_questions(self, db: Session, prepared: PreparedBatch, state: _RunState) -> None:
        if not prepared.questions:
            return
        ids = {question.external_id for question in prepared.questions}
        taken = (ids & state.pending_question_ids()) | _existing_external_ids(
            db,
            models.Question.external_id,
            models.Question.dataset_id,
            state.dataset_id,
            ids,
        )
        if not taken:
            return
        kept: list[ValidatedQuestion] = []
        for question in prepared.questions:
            if question.external_id in taken:
                prepared.skipped.append((question.record_number or 0, f"duplicate question id {question.external_id}"))
            else:
                kept.append(question)
        prepared.questions = kept

    def _drop_existing_answers(self, db: Session, prepared: PreparedBatch, state: _RunState) -> None:
        if not prepared.answers:
            return
        ids = {answer.external_id for answer in prepared.answers}
        taken = (ids & state.pending_answer_ids()) | _existing_external_ids(
            db,
            models.Answer.external_id,
            models.Answer.dataset_id,
            state.dataset_id,
            ids,
        )
        if not taken:
            return
        kept: list[ValidatedAnswer] = []
        for answer in prepared.answers:
            if answer.external_id in taken:
                prepared.skipped.append((answer.record_number or 0, f"duplicate answer id {answer.external_id}"))
            else:
                kept.append(answer)
        prepared.answers = kept

    def _classify(self, prepared: PreparedBatch) -> list[Prediction]:
        return self.classifier.classify_batch([question.text for question in prepared.questions])

    def _commit_next(self, in_flight: deque[tuple[PreparedBatch, Future]], state: _RunState) -> None:
        prepared, future = in_flight.popleft()
        batch = prepared.batch
        try:
            predictions = future.result()
            question_ids = self._persist(prepared, predictions, state.dataset_id)
        except PipelineError as error:
            error.dataset_id = state.dataset_id
            error.batch_range = batch.record_range
            state.release(batch.index)
            self._record_failed_batch(state.dataset_id, batch.index, error)
            raise
        state.release(batch.index)
        logger.info(
            "dataset %s batch %s committed: records=%s-%s questions=%s answers=%s skipped=%s",
            state.dataset_id,
            batch.index,
            batch.start,
            batch.end,
            len(prepared.questions),
            len(prepared.answers),
            len(prepared.skipped),
        )
        if question_ids:
            state.tickets.append(self.index_worker.submit(question_ids))

    def _drain(self, in_flight: deque[tuple[PreparedBatch, Future]], state: _RunState) -> None:
        while in_flight:
            self._commit_next(in_flight, state)

    def _persist(self, prepared: PreparedBatch, predictions: list[Prediction], dataset_id: int) -> list[int]:
        if len(predictions) != len(prepared.questions):
            raise ValidationError(
                f"classifier returned {len(predictions)} results for {len(prepared.questions)} questions"
            )
        db = self._session_factory()
        try:
            rows: list[tuple[models.Question, ValidatedQuestion, Prediction]] = []
            for question, prediction in zip(prepared.questions, predictions):
                category, difficulty, needs_review = merge_labels(question, prediction)
                row = models.Question(
                    dataset_id=dataset_id,
                    external_id=question.external_id,
                    text=question.text,
                    category=category,
                    difficulty=difficulty,
                    needs_review=needs_review,
                    meta=dict(question.metadata),
                )
                db.add(row)
                rows.append((row, question, prediction))
            db.flush()

            for row, question, prediction in rows:
                db.add(
                    models.ClassificationResult(
                        question_id=row.id,
                        category=prediction.category,
                        difficulty=prediction.difficulty,
                        confidence=prediction.confidence,
                        model_version=prediction.model_version,
                        needs_review=prediction.needs_review,
                    )
                )
                if question.has_source_labels:
                    db.add(
                        models.ClassificationResult(
                            question_id=row.id,
                            category=row.category,
                            difficulty=row.difficulty,
                            confidence=1.0,
                            model_version=models.SOURCE_MODEL_VERSION,
                            needs_review=False,
                        )
                    )

            id_map = {question.external_id: row.id for row, question, _ in rows}
            missing = {answer.question_external_id for answer in prepared.answers} - set(id_map)
            for chunk in _chunks(sorted(missing), LOOKUP_CHUNK_SIZE):
                found = (
                    db.query(models.Question.external_id, models.Question.id)
                    .filter(
                        models.Question.dataset_id == dataset_id,
                        models.Question.external_id.in_(chunk),
                    )
                    .all()
                )
                id_map.update({external_id: question_id for external_id, question_id in found})

            for answer in prepared.answers:
                question_id = id_map.get(answer.question_external_id)
                if question_id is None:
                    raise OrphanAnswerError(
                        f"answer id={answer.external_id} references question_id={answer.question_external_id} "
                        "which was not committed",
                        record_number=answer.record_number,
                    )
                db.add(
                    models.Answer(
                        question_id=question_id,
                        dataset_id=dataset_id,
                        external_id=answer.external_id,
                        text=answer.text,
                        meta=dict(answer.metadata),
                    )
                )

            batch = prepared.batch
            db.add(
                models.IngestBatch(
                    dataset_id=dataset_id,
                    batch_index=batch.index,
                    record_start=batch.start,
                    record_end=batch.end,
                    status=models.BatchStatus.committed,
                    question_count=len(prepared.questions),
                    answer_count=len(prepared.answers),
                    skipped_count=len(prepared.skipped),
                )
            )
            db.query(models.Dataset).filter(models.Dataset.id == dataset_id).update(
                {
                    models.Dataset.question_count: models.Dataset.question_count + len(prepared.questions),
                    models.Dataset.answer_count: models.Dataset.answer_count + len(prepared.answers),
                    models.Dataset.skipped_count: models.Dataset.skipped_count + len(prepared.skipped),
                },
                synchronize_session=False,
            )
            db.commit()
            return [row.id for row, _, _ in rows]
        except IntegrityError as error:
            db.rollback()
            raise ValidationError(f"integrity error while committing batch: {error.orig}") from error
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

    def _record_failed_batch(self, dataset_id: int, batch_index: int, error: PipelineError) -> None:
        start, end = error.batch_range if error.batch_range else (0, 0)
        db = self._session_factory()
        try:
            db.add(
                models.IngestBatch(
                    dataset_id=dataset_id,
                    batch_index=batch_index,
                    record_start=start,
                    record_end=end,
                    status=models.BatchStatus.failed,
                    error_kind=error.kind,
                    error_detail=error.message[:2000],
                )
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("failed batch %s of dataset %s already recorded", batch_index, dataset_id)
        finally:
            db.close()

    def _reindex_committed(self, db: Session, dataset_id: int) -> list[IndexTicket]:
        tickets: list[IndexTicket] = []
        last_id = 0
        while True:
            ids = [
                row[0]
                for row in db.query(models.Question.id)
                .filter(models.Question.dataset_id == dataset_id, models.Question.id > last_id)
                .order_by(models.Question.id.asc())
                .limit(REINDEX_CHUNK_SIZE)
                .all()
            ]
            if not ids:
                return tickets
            tickets.append(self.index_worker.submit(ids))
            last_id = ids[-1]

    def _await_index(self, state: _RunState) -> None:
        deadline = time.monotonic() + max(0.0, self.index_timeout)
        for ticket in state.tickets:
            remaining = max(0.0, deadline - time.monotonic())
            self.index_worker.wait(ticket, remaining, dataset_id=state.dataset_id)
        if state.tickets:
            slowest = max((ticket.lag_ms or 0.0) for ticket in state.tickets)
            logger.info(
                "dataset %s index acknowledged: jobs=%s max_lag_ms=%.1f",
                state.dataset_id,
                len(state.tickets),
                slowest,
            )


def ingest(
    upload_stream: IO[bytes] | bytes,
    source_format: str | models.SourceFormat,
    *,
    name: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> models.Dataset:
    return IngestionPipeline().ingest(upload_stream, source_format, name=name, metadata=metadata)
