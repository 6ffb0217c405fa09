from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import json
import logging
from typing import Any, Sequence

import numpy as np
import pandas as pd
from sqlalchemy.orm import Session

from curation import models
from curation.core.classifier import get_classifier_service
from curation.core.config import settings
from curation.core.errors import INSUFFICIENT_DATA, UNAVAILABLE, NotFoundError, ValidationError
from curation.core.locks import dataset_locks


logger = logging.getLogger(__name__)

OK = "ok"
DEMOGRAPHIC_PARITY = "demographic_parity"
EQUALIZED_ODDS = "equalized_odds"
STATISTICAL_PARITY = "statistical_parity_difference"
COLUMN_ATTRIBUTES = ("category", "difficulty")

TRUE_VALUES = frozenset({"1", "true", "t", "yes", "y", "selected", "positive", "pass", "accepted"})
FALSE_VALUES = frozenset({"0", "false", "f", "no", "n", "rejected", "negative", "fail", "declined"})

SNAPSHOT_CHUNK_SIZE = 2000

# snapshot columns that are not protected attributes
QUESTION_COLUMN = "__question_id__"
OUTCOME_COLUMN = "__outcome__"
LABEL_COLUMN = "__label__"
RESERVED_COLUMNS = frozenset({QUESTION_COLUMN, OUTCOME_COLUMN, LABEL_COLUMN})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def coerce_flag(value: Any) -> bool | None:
    if value is None or isinstance(value, float) and not np.isfinite(value):
        return None
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if isinstance(value, (int, float, np.integer, np.floating)):
        return bool(value != 0)
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return None


def _lookup(meta: dict[str, Any], key: str) -> Any:
    if key in meta:
        return meta[key]
    lowered = key.lower()
    for name, value in meta.items():
        if str(name).lower() == lowered:
            return value
    return None


def _group_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, models.Difficulty):
        return value.value
    text = str(value).strip()
    return text or None


def _normalize_attributes(protected_attributes: Sequence[str]) -> list[str]:
    attributes: list[str] = []
    for raw in protected_attributes or []:
        name = str(raw or "").strip()
        if name in RESERVED_COLUMNS:
            raise ValidationError(f"protected attribute name {name!r} is reserved")
        if name and name not in attributes:
            attributes.append(name)
    if not attributes:
        raise ValidationError("at least one protected attribute is required")
    return attributes


def load_snapshot(
    db: Session,
    dataset_id: int,
    protected_attributes: Sequence[str],
    *,
    outcome_field: str,
    label_field: str | None,
    as_of: datetime,
) -> pd.DataFrame:
    columns = [QUESTION_COLUMN, *protected_attributes, OUTCOME_COLUMN, LABEL_COLUMN]
    rows: list[dict[str, Any]] = []
    last_id = 0
    while True:
        chunk = (
            db.query(models.Question)
            .filter(
                models.Question.dataset_id == dataset_id,
                models.Question.created_at <= as_of,
                models.Question.id > last_id,
            )
            .order_by(models.Question.id.asc())
            .limit(SNAPSHOT_CHUNK_SIZE)
            .all()
        )
        if not chunk:
            break
        for question in chunk:
            meta = question.meta or {}
            row: dict[str, Any] = {QUESTION_COLUMN: question.id}
            for attribute in protected_attributes:
                if attribute in COLUMN_ATTRIBUTES:
                    row[attribute] = _group_value(getattr(question, attribute))
                else:
                    row[attribute] = _group_value(_lookup(meta, attribute))
            row[OUTCOME_COLUMN] = coerce_flag(_lookup(meta, outcome_field))
            row[LABEL_COLUMN] = coerce_flag(_lookup(meta, label_field)) if label_field else None
            rows.append(row)
        last_id = chunk[-1].id
    return pd.DataFrame(rows, columns=columns)


def snapshot_fingerprint(frame: pd.DataFrame) -> str:
    digest = hashlib.sha256()
    for record in frame.to_dict(orient="records"):
        digest.update(json.dumps(record, sort_keys=True, default=str).encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()


def _rate(values: pd.Series) -> float | None:
    if values.empty:
        return None
    return float(values.astype(float).mean())


def _round(value: float | None) -> float | None:
    if value is None or not np.isfinite(value):
        return None
    return round(float(value), 6)


def _signed_extreme(differences: dict[str, float]) -> float:
    # ties on magnitude resolve to the smallest group name
    key = min(differences, key=lambda name: (-abs(differences[name]), name))
    return differences[key]


def _group_sizes(frame: pd.DataFrame, attribute: str, min_group_size: int) -> tuple[pd.Series, list[str]]:
    sizes = frame.groupby(attribute, sort=True).size()
    eligible = [str(name) for name, count in sizes.items() if count >= min_group_size]
    return sizes, eligible


def demographic_parity(frame: pd.DataFrame, attribute: str, *, min_group_size: int) -> dict[str, Any]:
    sizes, eligible = _group_sizes(frame, attribute, min_group_size)
    rates = {name: _rate(frame.loc[frame[attribute] == name, OUTCOME_COLUMN]) for name in sizes.index}
    groups: dict[str, dict[str, Any]] = {
        str(name): {
            "count": int(count),
            "positive_rate": _round(rates.get(name)) if count >= min_group_size else None,
            "status": OK if count >= min_group_size else INSUFFICIENT_DATA,
        }
        for name, count in sizes.items()
    }
    if len(eligible) < 2:
        return {"value": None, "status": INSUFFICIENT_DATA, "reference_group": None, "groups": groups}

    reference = min(eligible, key=lambda name: (-int(sizes[name]), name))
    reference_rate = rates[reference]
    differences = {name: rates[name] - reference_rate for name in eligible}
    for name, difference in differences.items():
        groups[name]["difference"] = _round(difference)
    value = float(np.clip(_signed_extreme(differences), -1.0, 1.0))
    return {"value": _round(value), "status": OK, "reference_group": reference, "groups": groups}


def statistical_parity_difference(frame: pd.DataFrame, attribute: str, *, min_group_size: int) -> dict[str, Any]:
    sizes, eligible = _group_sizes(frame, attribute, min_group_size)
    groups: dict[str, dict[str, Any]] = {
        str(name): {"count": int(count), "status": OK if count >= min_group_size else INSUFFICIENT_DATA}
        for name, count in sizes.items()
    }
    if len(eligible) < 2:
        return {"value": None, "status": INSUFFICIENT_DATA, "groups": groups}

    outcomes = frame[OUTCOME_COLUMN].astype(float)
    differences: dict[str, float] = {}
    for name in eligible:
        mask = frame[attribute] == name
        inside = float(outcomes[mask].mean())
        outside = float(outcomes[~mask].mean())
        differences[name] = inside - outside
        groups[name]["selection_rate"] = _round(inside)
        groups[name]["rest_rate"] = _round(outside)
        groups[name]["difference"] = _round(inside - outside)
    value = float(np.clip(_signed_extreme(differences), -1.0, 1.0))
    return {"value": _round(value), "status": OK, "groups": groups}


def equalized_odds(frame: pd.DataFrame, attribute: str, *, min_group_size: int) -> dict[str, Any]:
    labelled = frame[frame[LABEL_COLUMN].notna()]
    if labelled.empty:
        return {"value": None, "status": UNAVAILABLE, "groups": {}}

    sizes, eligible = _group_sizes(labelled, attribute, min_group_size)
    groups: dict[str, dict[str, Any]] = {}
    tprs: list[float] = []
    fprs: list[float] = []
    for name, count in sizes.items():
        entry: dict[str, Any] = {"count": int(count)}
        if str(name) not in eligible:
            entry["status"] = INSUFFICIENT_DATA
            groups[str(name)] = entry
            continue
        rows = labelled[labelled[attribute] == name]
        positives = rows[rows[LABEL_COLUMN].astype(bool)]
        negatives = rows[~rows[LABEL_COLUMN].astype(bool)]
        tpr = _rate(positives[OUTCOME_COLUMN])
        fpr = _rate(negatives[OUTCOME_COLUMN])
        entry.update({"status": OK, "tpr": _round(tpr), "fpr": _round(fpr)})
        if tpr is not None:
            tprs.append(tpr)
        if fpr is not None:
            fprs.append(fpr)
        groups[str(name)] = entry

    tpr_spread = max(tprs) - min(tprs) if len(tprs) >= 2 else None
    fpr_spread = max(fprs) - min(fprs) if len(fprs) >= 2 else None
    spreads = [spread for spread in (tpr_spread, fpr_spread) if spread is not None]
    if len(eligible) < 2 or not spreads:
        return {
            "value": None,
            "status": INSUFFICIENT_DATA,
            "tpr_spread": _round(tpr_spread),
            "fpr_spread": _round(fpr_spread),
            "groups": groups,
        }
    value = float(np.clip(max(spreads), 0.0, 1.0))
    return {
        "value": _round(value),
        "status": OK,
        "tpr_spread": _round(tpr_spread),
        "fpr_spread": _round(fpr_spread),
        "groups": groups,
    }


def compute_metrics(
    frame: pd.DataFrame,
    protected_attributes: Sequence[str],
    *,
    min_group_size: int | None = None,
) -> dict[str, dict[str, Any]]:
    threshold = max(1, settings.BIAS_MIN_GROUP_SIZE if min_group_size is None else min_group_size)
    metrics: dict[str, dict[str, Any]] = {DEMOGRAPHIC_PARITY: {}, EQUALIZED_ODDS: {}, STATISTICAL_PARITY: {}}
    for attribute in protected_attributes:
        usable = frame[frame[attribute].notna() & frame[OUTCOME_COLUMN].notna()]
        excluded = {
            "missing_attribute": int(frame[attribute].isna().sum()),
            "missing_outcome": int((frame[attribute].notna() & frame[OUTCOME_COLUMN].isna()).sum()),
        }
        for name, fn in (
            (DEMOGRAPHIC_PARITY, demographic_parity),
            (EQUALIZED_ODDS, equalized_odds),
            (STATISTICAL_PARITY, statistical_parity_difference),
        ):
            result = fn(usable, attribute, min_group_size=threshold)
            result["sample_size"] = int(len(usable))
            result["excluded"] = dict(excluded)
            metrics[name][attribute] = result
    return metrics


def analyze(
    db: Session,
    dataset_id: int,
    protected_attributes: Sequence[str],
    *,
    outcome_field: str | None = None,
    label_field: str | None = None,
    as_of: datetime | None = None,
    model_version: str | None = None,
    min_group_size: int | None = None,
) -> models.BiasReport:
    attributes = _normalize_attributes(protected_attributes)
    outcome = (outcome_field or settings.BIAS_DEFAULT_OUTCOME_FIELD).strip()
    label = settings.BIAS_DEFAULT_LABEL_FIELD if label_field is None else (label_field.strip() or None)
    dataset = db.get(models.Dataset, dataset_id)
    if dataset is None:
        raise NotFoundError(f"dataset {dataset_id} not found", dataset_id=dataset_id)

    with dataset_locks.hold(dataset_id, timeout=settings.BIAS_SNAPSHOT_LOCK_TIMEOUT_SECONDS):
        snapshot_at = _as_utc(as_of) if as_of else utc_now()
        frame = load_snapshot(
            db,
            dataset_id,
            attributes,
            outcome_field=outcome,
            label_field=label,
            as_of=snapshot_at,
        )

    if model_version is None:
        model_version = get_classifier_service().model_version

    report = models.BiasReport(
        dataset_id=dataset_id,
        generated_at=utc_now(),
        as_of=snapshot_at,
        protected_attributes=attributes,
        outcome_field=outcome,
        label_field=label,
        metrics=compute_metrics(frame, attributes, min_group_size=min_group_size),
        model_version=model_version,
        sample_size=int(len(frame)),
        snapshot_fingerprint=snapshot_fingerprint(frame),
    )
    db.add(report)
    db.commit()
    db.refresh(report)
    logger.info(
        "bias report %s generated: dataset_id=%s attributes=%s sample_size=%s fingerprint=%s",
        report.id,
        dataset_id,
        ",".join(attributes),
        report.sample_size,
        report.snapshot_fingerprint[:12],
    )
    return report


def list_reports(db: Session, dataset_id: int) -> list[models.BiasReport]:
    return (
        db.query(models.BiasReport)
        .filter(models.BiasReport.dataset_id == dataset_id)
        .order_by(models.BiasReport.generated_at.desc(), models.BiasReport.id.desc())
        .all()
    )


def get_report(db: Session, report_id: int) -> models.BiasReport:
    report = db.get(models.BiasReport, report_id)
    if report is None:
        raise NotFoundError(f"bias report {report_id} not found")
    return report
