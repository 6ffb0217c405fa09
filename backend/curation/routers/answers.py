from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from curation import models, schemas
from curation.deps import get_db_read


router = APIRouter(tags=["answers"])


@router.get("", response_model=list[schemas.AnswerOut])
def list_answers(
    question_id: int = Query(...),
    db: Session = Depends(get_db_read),
):
    if db.get(models.Question, question_id) is None:
        raise HTTPException(status_code=404, detail="Question not found")
    return (
        db.query(models.Answer)
        .filter(models.Answer.question_id == question_id)
        .order_by(models.Answer.id.asc())
        .all()
    )
