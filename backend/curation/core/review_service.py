from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.orm import Session

from curation import models
from curation.core.errors import IndexTimeout, NotFoundError, ValidationError
from curation.core.search_index import IndexWorker, get_index_worker
from curation.core.validation import normalize_category, normalize_difficulty


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OverrideOutcome:
    result: models.ClassificationResult
    index_pending: bool = False


def _get_question(db: Session, question_id: int) -> models.Question:
    question = db.get(models.Question, question_id)
    if question is None:
        raise NotFoundError(f"question {question_id} not found")
    return question


def override_classification(
    db: Session,
    question_id: int,
    *,
    category: str | None = None,
    difficulty: str | models.Difficulty | None = None,
    reviewer: str | None = None,
    note: str | None = None,
    index_worker: IndexWorker | None = None,
    index_timeout: float | None = None,
) -> OverrideOutcome:
    """Record a reviewer's label and make it the question's current one.

    Fields left empty keep the question's current value. The override is
    appended to the classification history and committed before the search
    index is refreshed. If the index does not acknowledge in time the override
    stands and `index_pending` is set; the queued job still applies it.
    """
    question = _get_question(db, question_id)
    new_category = normalize_category(category)
    new_difficulty = normalize_difficulty(difficulty)
    if new_category is None and new_difficulty is None:
        raise ValidationError("override needs a category or a difficulty")

    result = models.ClassificationResult(
        question_id=question.id,
        category=new_category or question.category,
        difficulty=new_difficulty or question.difficulty,
        confidence=1.0,
        model_version=models.MANUAL_MODEL_VERSION,
        needs_review=False,
        reviewer=(reviewer or "").strip()[:120] or None,
        note=(note or "").strip() or None,
    )
    question.category = result.category
    question.difficulty = result.difficulty
    question.needs_review = False
    db.add(result)
    db.add(question)
    db.commit()
    db.refresh(result)
    logger.info(
        "manual classification: question_id=%s category=%s difficulty=%s reviewer=%s",
        question.id,
        result.category,
        result.difficulty.value if result.difficulty else None,
        result.reviewer,
    )

    worker = index_worker or get_index_worker()
    try:
        worker.wait(worker.submit([question.id]), index_timeout, dataset_id=question.dataset_id)
    except IndexTimeout as error:
        logger.warning("manual classification of question %s saved, index refresh pending: %s", question.id, error)
        return OverrideOutcome(result=result, index_pending=True)
    return OverrideOutcome(result=result)


def list_review_queue(
    db: Session,
    *,
    dataset_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[models.Question]:
    query = db.query(models.Question).filter(models.Question.needs_review.is_(True))
    if dataset_id is not None:
        query = query.filter(models.Question.dataset_id == dataset_id)
    return query.order_by(models.Question.id.asc()).offset(max(0, offset)).limit(max(1, limit)).all()


def classification_history(db: Session, question_id: int) -> list[models.ClassificationResult]:
    _get_question(db, question_id)
    return (
        db.query(models.ClassificationResult)
        .filter(models.ClassificationResult.question_id == question_id)
        .order_by(models.ClassificationResult.id.asc())
        .all()
    )
