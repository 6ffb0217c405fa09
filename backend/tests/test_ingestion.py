import json
import threading

import pytest

from curation import models
from curation.core.bias import analyze
from curation.core.classifier import Classifier, ClassifierService, KeywordClassifier, Prediction
from curation.core.config import settings
from curation.core.errors import ClassifierUnavailable, DatasetBusy, InvalidStatusTransition
from curation.core.ingestion import IngestionPipeline, recover_interrupted, transition
from curation.core.locks import dataset_locks
from curation.core.search_index import IndexTicket, IndexWorker, SearchQuery, search


SAMPLE_CSV = (
    "record_type,id,text,category,difficulty,question_id,gender,selected\n"
    "question,q1,Solve the equation 2x + 3 = 7,,,,f,1\n"
    "question,q2,What is the capital of France?,geography,easy,,m,0\n"
    "question,q3,Which gas do plants absorb during photosynthesis?,,,,f,1\n"
    "answer,a1,x = 2,,,q1,,\n"
    "answer,a2,Carbon dioxide,,,q3,,\n"
).encode("utf-8")


def _questions(count: int, start: int = 1) -> list[dict]:
    return [
        {"id": f"q{idx}", "text": f"Solve the algebra equation number {idx} for x"}
        for idx in range(start, start + count)
    ]


class SilentIndexWorker(IndexWorker):
    """Accepts jobs but never acknowledges them."""

    def submit(self, question_ids):
        return IndexTicket(job_id=0, question_ids=list(question_ids))


def test_end_to_end_csv(db, pipeline):
    dataset = pipeline(batch_size=2).ingest(SAMPLE_CSV, "csv", name="sample")

    assert dataset.status == models.DatasetStatus.indexed
    assert (dataset.question_count, dataset.answer_count, dataset.skipped_count) == (3, 2, 0)
    assert dataset.completed_at is not None

    questions = {
        row.external_id: row
        for row in db.query(models.Question).filter(models.Question.dataset_id == dataset.id).all()
    }
    assert set(questions) == {"q1", "q2", "q3"}
    assert questions["q1"].category == "math"
    assert questions["q1"].meta == {"gender": "f", "selected": "1"}
    assert questions["q2"].category == "geography"
    assert questions["q2"].difficulty == models.Difficulty.easy
    assert questions["q2"].needs_review is False

    history = [row.model_version for row in questions["q2"].classifications]
    assert history == ["keyword-v1", models.SOURCE_MODEL_VERSION]
    assert len(questions["q1"].classifications) == 1

    answers = db.query(models.Answer).order_by(models.Answer.external_id).all()
    assert [(row.external_id, row.question_id) for row in answers] == [
        ("a1", questions["q1"].id),
        ("a2", questions["q3"].id),
    ]

    assert db.query(models.QuestionIndexEntry).count() == 3
    page = search(db, SearchQuery(keyword="capital"))
    assert [hit.question.external_id for hit in page.items] == ["q2"]

    ledger = db.query(models.IngestBatch).order_by(models.IngestBatch.batch_index).all()
    assert [(row.record_start, row.record_end, row.status) for row in ledger] == [
        (1, 2, models.BatchStatus.committed),
        (3, 4, models.BatchStatus.committed),
        (5, 5, models.BatchStatus.committed),
    ]


def test_same_upload_is_idempotent(db, pipeline):
    first = pipeline().ingest(SAMPLE_CSV, "csv")
    second = pipeline().ingest(SAMPLE_CSV, "csv")

    assert first.id == second.id
    assert db.query(models.Dataset).count() == 1
    assert db.query(models.Question).count() == 3
    assert db.query(models.ClassificationResult).count() == 4


def test_orphan_answer_fails_its_batch_and_keeps_earlier_ones(db, pipeline):
    records = _questions(500)
    records.append({"id": "a-orphan", "question_id": "missing", "text": "42"})
    records.extend(_questions(99, start=502))

    dataset = pipeline(batch_size=500).ingest(json.dumps(records).encode("utf-8"), "json")

    assert dataset.status == models.DatasetStatus.failed
    assert dataset.error_kind == "orphan_answer"
    assert (dataset.failed_batch_start, dataset.failed_batch_end) == (501, 600)
    assert dataset.retryable is False
    assert "missing" in dataset.error_detail
    assert dataset.question_count == 500
    assert db.query(models.Question).count() == 500
    assert db.query(models.Answer).count() == 0

    ledger = db.query(models.IngestBatch).order_by(models.IngestBatch.batch_index).all()
    assert [(row.batch_index, row.status) for row in ledger] == [
        (0, models.BatchStatus.committed),
        (1, models.BatchStatus.failed),
    ]


def test_answers_may_reference_earlier_batches(db, pipeline):
    records = _questions(3)
    records.append({"id": "a1", "question_id": "q1", "text": "x = 1"})
    dataset = pipeline(batch_size=1, max_workers=2).ingest(json.dumps(records).encode("utf-8"), "json")

    assert dataset.status == models.DatasetStatus.indexed
    answer = db.query(models.Answer).one()
    assert answer.question.external_id == "q1"


def test_schema_violation_fails_batch(db, pipeline):
    records = [
        {"record_type": "question", "id": "q1", "text": "What is 2 + 2?", "correct_answer": "4"},
    ]
    dataset = pipeline().ingest(json.dumps(records).encode("utf-8"), "json")

    assert dataset.status == models.DatasetStatus.failed
    assert dataset.error_kind == "schema_violation"
    assert db.query(models.Question).count() == 0


def test_invalid_records_are_skipped_within_error_rate(db, pipeline):
    records = _questions(9) + [{"id": "blank", "text": " "}]
    dataset = pipeline(max_error_rate=0.1).ingest(json.dumps(records).encode("utf-8"), "json")

    assert dataset.status == models.DatasetStatus.indexed
    assert (dataset.question_count, dataset.skipped_count) == (9, 1)


def test_error_rate_above_limit_fails(db, pipeline):
    records = _questions(8) + [{"id": "b1", "text": ""}, {"id": "b2", "difficulty": "impossible", "text": "x"}]
    dataset = pipeline(max_error_rate=0.1).ingest(json.dumps(records).encode("utf-8"), "json")

    assert dataset.status == models.DatasetStatus.failed
    assert dataset.error_kind == "error_rate_exceeded"
    assert (dataset.failed_batch_start, dataset.failed_batch_end) == (1, 10)


def test_duplicate_question_ids_are_skipped(db, pipeline):
    records = _questions(2) + [{"id": "q1", "text": "Another algebra equation"}]
    dataset = pipeline(max_error_rate=0.5).ingest(json.dumps(records).encode("utf-8"), "json")

    assert dataset.status == models.DatasetStatus.indexed
    assert (dataset.question_count, dataset.skipped_count) == (2, 1)


def test_empty_upload_fails(db, pipeline):
    dataset = pipeline().ingest(b"[]", "json")

    assert dataset.status == models.DatasetStatus.failed
    assert dataset.error_kind == "malformed_upload"


def test_malformed_json_fails_with_batch_range(db, pipeline):
    dataset = pipeline(batch_size=2).ingest(b'[{"id": "q1", "text": "x"}, {"id": ', "json")

    assert dataset.status == models.DatasetStatus.failed
    assert dataset.error_kind == "malformed_upload"
    assert dataset.failed_batch_start == 1


def test_index_timeout_then_resume(db, classifier, index_worker):
    payload = json.dumps(_questions(4)).encode("utf-8")
    silent = IngestionPipeline(
        classifier=classifier,
        index_worker=SilentIndexWorker(),
        batch_size=2,
        index_timeout=0.05,
    )
    failed = silent.ingest(payload, "json")

    assert failed.status == models.DatasetStatus.failed
    assert failed.error_kind == "index_timeout"
    assert failed.retryable is True
    assert failed.question_count == 4
    assert db.query(models.QuestionIndexEntry).count() == 0

    resumed = IngestionPipeline(classifier=classifier, index_worker=index_worker, batch_size=2).ingest(payload, "json")

    assert resumed.id == failed.id
    assert resumed.status == models.DatasetStatus.indexed
    assert resumed.error_kind is None
    assert resumed.question_count == 4
    assert db.query(models.Question).count() == 4
    assert db.query(models.QuestionIndexEntry).count() == 4


def test_status_transitions_are_checked(db, make_dataset):
    dataset = make_dataset(status=models.DatasetStatus.indexed)
    with pytest.raises(InvalidStatusTransition):
        transition(db, dataset, models.DatasetStatus.classifying)


def test_labelled_upload_is_searchable_by_category(db, pipeline):
    records = [
        {"id": "q1", "text": "What is 7 times 8?", "category": "math"},
        {"id": "q2", "text": "Who wrote the Magna Carta?", "category": "history"},
        {"id": "q3", "text": "Factor x^2 - 9", "category": "math"},
        {"id": "a1", "question_id": "q1", "text": "56"},
        {"id": "a2", "question_id": "q3", "text": "(x - 3)(x + 3)"},
    ]
    dataset = pipeline().ingest(json.dumps(records).encode("utf-8"), "json")

    assert dataset.status == models.DatasetStatus.indexed
    assert (dataset.question_count, dataset.answer_count) == (3, 2)

    page = search(db, SearchQuery(category="math"))
    assert page.total == 2
    assert [hit.question.external_id for hit in page.items] == ["q1", "q3"]
    assert page.items[0].question.id < page.items[1].question.id


class DownClassifier(Classifier):
    model_version = "down-v1"

    def __init__(self) -> None:
        self.calls = 0

    def classify(self, text: str) -> Prediction:
        self.calls += 1
        raise ClassifierUnavailable("classifier backend unreachable")


def test_unavailable_classifier_fails_dataset_as_retryable(db, index_worker):
    delays: list[float] = []
    backend = DownClassifier()
    service = ClassifierService(backend, max_retries=2, backoff_seconds=0.5, sleep=delays.append)
    payload = json.dumps(_questions(3)).encode("utf-8")

    failed = IngestionPipeline(classifier=service, index_worker=index_worker).ingest(payload, "json")

    assert backend.calls == 3
    assert delays == [0.5, 1.0]
    assert failed.status == models.DatasetStatus.failed
    assert failed.error_kind == "classifier_unavailable"
    assert failed.retryable is True
    assert (failed.failed_batch_start, failed.failed_batch_end) == (1, 3)
    assert db.query(models.Question).count() == 0
    ledger = db.query(models.IngestBatch).one()
    assert ledger.status == models.BatchStatus.failed

    working = ClassifierService(KeywordClassifier(), max_retries=0)
    resumed = IngestionPipeline(classifier=working, index_worker=index_worker).ingest(payload, "json")
    assert resumed.id == failed.id
    assert resumed.status == models.DatasetStatus.indexed
    assert resumed.question_count == 3


class GatedClassifier(KeywordClassifier):
    """Blocks inside classification until released."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def classify_batch(self, texts):
        self.started.set()
        self.release.wait(10)
        return super().classify_batch(texts)


def test_bias_analysis_is_refused_during_ingestion(db, index_worker, monkeypatch):
    monkeypatch.setattr(settings, "BIAS_SNAPSHOT_LOCK_TIMEOUT_SECONDS", 0.05)
    gated = GatedClassifier()
    ingest_pipeline = IngestionPipeline(
        classifier=ClassifierService(gated, max_retries=0),
        index_worker=index_worker,
    )
    records = [dict(question, gender="f", selected="1") for question in _questions(3)]
    results: list[models.Dataset] = []
    worker = threading.Thread(
        target=lambda: results.append(ingest_pipeline.ingest(json.dumps(records).encode("utf-8"), "json"))
    )
    worker.start()
    try:
        assert gated.started.wait(10)
        dataset = db.query(models.Dataset).one()
        with pytest.raises(DatasetBusy) as busy:
            analyze(db, dataset.id, ["gender"], model_version="keyword-v1")
        assert busy.value.retryable is True
    finally:
        gated.release.set()
        worker.join(10)

    assert results[0].status == models.DatasetStatus.indexed
    report = analyze(db, results[0].id, ["gender"], model_version="keyword-v1")
    assert report.sample_size == 3


def test_interrupted_dataset_resumes_on_reupload(db, pipeline):
    payload = json.dumps(_questions(2)).encode("utf-8")
    stale = pipeline(index_worker=SilentIndexWorker(), index_timeout=0.0).ingest(payload, "json")
    dataset = db.get(models.Dataset, stale.id)
    dataset.status = models.DatasetStatus.classifying
    db.commit()

    resumed = pipeline().ingest(payload, "json")

    assert resumed.id == dataset.id
    assert resumed.status == models.DatasetStatus.indexed
    assert resumed.question_count == 2
    assert db.query(models.Question).count() == 2


def test_recover_interrupted_skips_datasets_in_use(db, make_dataset):
    stuck = make_dataset(status=models.DatasetStatus.validating)
    running = make_dataset(status=models.DatasetStatus.classifying)
    done = make_dataset(status=models.DatasetStatus.indexed)

    with dataset_locks.hold(running.id):
        recovered = recover_interrupted()

    assert recovered == [stuck.id]
    db.expire_all()
    failed = db.get(models.Dataset, stuck.id)
    assert failed.status == models.DatasetStatus.failed
    assert failed.error_kind == "interrupted"
    assert failed.retryable is True
    assert db.get(models.Dataset, running.id).status == models.DatasetStatus.classifying
    assert db.get(models.Dataset, done.id).status == models.DatasetStatus.indexed
