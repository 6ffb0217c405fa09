from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from sqlalchemy.orm import Session

from curation import models, schemas
from curation.core import bias, ingestion, search_index
from curation.core.errors import PipelineError, UnsupportedFormat
from curation.core.upload_parser import parse_source_format
from curation.deps import get_db_read, get_db_write, pipeline_http_error


router = APIRouter(tags=["datasets"])


def _get_dataset(db: Session, dataset_id: int) -> models.Dataset:
    dataset = db.get(models.Dataset, dataset_id)
    if dataset is None:
        raise HTTPException(status_code=404, detail="Dataset not found")
    return dataset


def _resolve_format(source_format: str, filename: str | None) -> models.SourceFormat:
    value = source_format.strip() or Path(filename or "").suffix
    try:
        return parse_source_format(value)
    except UnsupportedFormat as error:
        raise pipeline_http_error(error) from error


def _failure_detail(dataset: models.Dataset) -> dict:
    batch_range = None
    if dataset.failed_batch_start is not None and dataset.failed_batch_end is not None:
        batch_range = [dataset.failed_batch_start, dataset.failed_batch_end]
    return {
        "dataset_id": dataset.id,
        "error_kind": dataset.error_kind,
        "batch_range": batch_range,
        "retryable": dataset.retryable,
        "detail": dataset.error_detail,
    }


@router.post("/upload", response_model=schemas.DatasetOut, status_code=status.HTTP_201_CREATED)
def upload_dataset(
    file: UploadFile = File(...),
    source_format: str = Form(default=""),
    name: str = Form(default=""),
):
    fmt = _resolve_format(source_format, file.filename)
    try:
        dataset = ingestion.ingest(file.file, fmt, name=name.strip() or file.filename)
    except PipelineError as error:
        raise pipeline_http_error(error) from error
    if dataset.status == models.DatasetStatus.failed:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=_failure_detail(dataset))
    return dataset


@router.get("", response_model=list[schemas.DatasetOut])
def list_datasets(
    status_filter: models.DatasetStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db_read),
):
    query = db.query(models.Dataset)
    if status_filter:
        query = query.filter(models.Dataset.status == status_filter)
    return query.order_by(models.Dataset.id.desc()).offset(offset).limit(limit).all()


@router.get("/{dataset_id}", response_model=schemas.DatasetOut)
def get_dataset(dataset_id: int, db: Session = Depends(get_db_read)):
    return _get_dataset(db, dataset_id)


@router.get("/{dataset_id}/batches", response_model=list[schemas.IngestBatchOut])
def list_batches(dataset_id: int, db: Session = Depends(get_db_read)):
    _get_dataset(db, dataset_id)
    return (
        db.query(models.IngestBatch)
        .filter(models.IngestBatch.dataset_id == dataset_id)
        .order_by(models.IngestBatch.batch_index.asc())
        .all()
    )


@router.post("/{dataset_id}/reindex", response_model=schemas.ReindexResult)
def reindex_dataset(dataset_id: int, db: Session = Depends(get_db_write)):
    _get_dataset(db, dataset_id)
    stats = search_index.rebuild_dataset_index(db, dataset_id)
    db.commit()
    return schemas.ReindexResult(dataset_id=dataset_id, stats=stats)


@router.post(
    "/{dataset_id}/bias-reports",
    response_model=schemas.BiasReportOut,
    status_code=status.HTTP_201_CREATED,
)
def create_bias_report(
    dataset_id: int,
    payload: schemas.BiasReportRequest,
    db: Session = Depends(get_db_write),
):
    try:
        return bias.analyze(
            db,
            dataset_id,
            payload.protected_attributes,
            outcome_field=payload.outcome_field,
            label_field=payload.label_field,
            as_of=payload.as_of,
        )
    except PipelineError as error:
        raise pipeline_http_error(error) from error


@router.get("/{dataset_id}/bias-reports", response_model=list[schemas.BiasReportOut])
def list_bias_reports(dataset_id: int, db: Session = Depends(get_db_read)):
    _get_dataset(db, dataset_id)
    return bias.list_reports(db, dataset_id)
