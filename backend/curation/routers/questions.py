from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from curation import models, schemas
from curation.core import review_service
from curation.core.errors import PipelineError
from curation.core.validation import normalize_category
from curation.deps import get_db_read, get_db_write, pipeline_http_error


router = APIRouter(tags=["questions"])


@router.get("", response_model=list[schemas.QuestionOut])
def list_questions(
    dataset_id: int | None = Query(default=None),
    category: str | None = Query(default=None, max_length=80),
    difficulty: models.Difficulty | None = Query(default=None),
    needs_review: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db_read),
):
    query = db.query(models.Question)
    if dataset_id is not None:
        query = query.filter(models.Question.dataset_id == dataset_id)
    if category:
        query = query.filter(models.Question.category == normalize_category(category))
    if difficulty:
        query = query.filter(models.Question.difficulty == difficulty)
    if needs_review is not None:
        query = query.filter(models.Question.needs_review.is_(needs_review))
    return query.order_by(models.Question.id.asc()).offset(offset).limit(limit).all()


@router.get("/review-queue", response_model=list[schemas.QuestionOut])
def review_queue(
    dataset_id: int | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db_read),
):
    return review_service.list_review_queue(db, dataset_id=dataset_id, limit=limit, offset=offset)


@router.get("/{question_id}", response_model=schemas.QuestionOut)
def get_question(question_id: int, db: Session = Depends(get_db_read)):
    question = db.get(models.Question, question_id)
    if question is None:
        raise HTTPException(status_code=404, detail="Question not found")
    return question


@router.get("/{question_id}/classifications", response_model=list[schemas.ClassificationResultOut])
def get_classifications(question_id: int, db: Session = Depends(get_db_read)):
    try:
        return review_service.classification_history(db, question_id)
    except PipelineError as error:
        raise pipeline_http_error(error) from error


@router.put("/{question_id}/classification", response_model=schemas.ClassificationOverrideOut)
def override_classification(
    question_id: int,
    payload: schemas.ClassificationOverrideRequest,
    db: Session = Depends(get_db_write),
):
    try:
        outcome = review_service.override_classification(
            db,
            question_id,
            category=payload.category,
            difficulty=payload.difficulty,
            reviewer=payload.reviewer,
            note=payload.note,
        )
    except PipelineError as error:
        raise pipeline_http_error(error) from error
    saved = schemas.ClassificationResultOut.model_validate(outcome.result)
    return schemas.ClassificationOverrideOut(**saved.model_dump(), index_pending=outcome.index_pending)
