from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from curation import schemas
from curation.core import bias
from curation.core.errors import NotFoundError
from curation.deps import get_db_read, pipeline_http_error


router = APIRouter(tags=["bias-reports"])


@router.get("/{report_id}", response_model=schemas.BiasReportOut)
def get_bias_report(report_id: int, db: Session = Depends(get_db_read)):
    try:
        return bias.get_report(db, report_id)
    except NotFoundError as error:
        raise pipeline_http_error(error) from error
