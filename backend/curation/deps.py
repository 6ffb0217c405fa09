from fastapi import HTTPException, status

from curation.core.db_read_write import ReadSessionLocal, WriteSessionLocal
from curation.core.errors import DatasetBusy, NotFoundError, PipelineError


def get_db_write():
    db = WriteSessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_db_read():
    db = ReadSessionLocal()
    try:
        yield db
    finally:
        db.close()


def pipeline_http_error(error: PipelineError) -> HTTPException:
    if isinstance(error, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, DatasetBusy):
        code = status.HTTP_409_CONFLICT
    elif error.retryable:
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return HTTPException(status_code=code, detail=error.to_dict())
