from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from curation import schemas
from curation.core import search_index
from curation.core.config import settings
from curation.core.errors import ValidationError
from curation.deps import get_db_read, pipeline_http_error


router = APIRouter(tags=["search"])


@router.get("", response_model=schemas.SearchPageOut)
def search_questions(
    keyword: str | None = Query(default=None, max_length=200),
    category: str | None = Query(default=None),
    difficulty: str | None = Query(default=None),
    dataset_id: int | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=settings.SEARCH_DEFAULT_PAGE_SIZE, ge=1, le=settings.SEARCH_MAX_PAGE_SIZE),
    db: Session = Depends(get_db_read),
):
    query = search_index.SearchQuery(
        keyword=keyword,
        category=category,
        difficulty=difficulty,
        dataset_id=dataset_id,
    )
    try:
        result = search_index.search(db, query, page=page, page_size=page_size)
    except ValidationError as error:
        raise pipeline_http_error(error) from error
    return schemas.SearchPageOut(
        items=[
            schemas.SearchHitOut(
                question=schemas.QuestionOut.model_validate(hit.question),
                relevance=hit.relevance,
            )
            for hit in result.items
        ],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )
