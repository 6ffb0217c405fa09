from datetime import datetime, timezone

from hypothesis import given, settings as hypothesis_settings, strategies as st
import pandas as pd
import pytest

from curation import models
from curation.core.bias import (
    DEMOGRAPHIC_PARITY,
    EQUALIZED_ODDS,
    LABEL_COLUMN,
    OUTCOME_COLUMN,
    QUESTION_COLUMN,
    STATISTICAL_PARITY,
    analyze,
    coerce_flag,
    compute_metrics,
    get_report,
    list_reports,
)
from curation.core.errors import INSUFFICIENT_DATA, UNAVAILABLE, NotFoundError, ValidationError


def _seed(db, dataset, groups):
    """groups: name -> list of (selected, label) meta values."""
    counter = 0
    for group, rows in groups.items():
        for selected, label in rows:
            counter += 1
            meta = {"gender": group, "selected": selected}
            if label is not None:
                meta["label"] = label
            db.add(
                models.Question(
                    dataset_id=dataset.id,
                    external_id=f"q{counter}",
                    text=f"Question {counter}",
                    category="math",
                    meta=meta,
                )
            )
    db.commit()


def _rows(positive: int, total: int, label=None):
    return [("yes" if idx < positive else "no", label) for idx in range(total)]


def test_coerce_flag():
    assert coerce_flag(True) is True
    assert coerce_flag(0) is False
    assert coerce_flag("Yes") is True
    assert coerce_flag("0") is False
    assert coerce_flag("maybe") is None
    assert coerce_flag(None) is None
    assert coerce_flag(float("nan")) is None


def test_parity_metrics(db, make_dataset):
    dataset = make_dataset()
    _seed(db, dataset, {"f": _rows(30, 40), "m": _rows(20, 40), "x": _rows(0, 10)})

    report = analyze(db, dataset.id, ["gender"], model_version="keyword-v1")

    assert report.sample_size == 90
    assert report.model_version == "keyword-v1"
    dp = report.metrics[DEMOGRAPHIC_PARITY]["gender"]
    assert dp["status"] == "ok"
    assert dp["reference_group"] == "f"
    assert dp["value"] == pytest.approx(-0.25)
    assert dp["groups"]["x"]["status"] == INSUFFICIENT_DATA

    spd = report.metrics[STATISTICAL_PARITY]["gender"]
    assert spd["value"] == pytest.approx(0.35)
    assert spd["groups"]["m"]["difference"] == pytest.approx(-0.1)

    assert report.metrics[EQUALIZED_ODDS]["gender"]["status"] == UNAVAILABLE


def test_equalized_odds_with_labels(db, make_dataset):
    dataset = make_dataset()
    groups = {
        "f": _rows(30, 30, label="1") + _rows(0, 30, label="0"),
        "m": _rows(15, 30, label="1") + _rows(6, 30, label="0"),
    }
    _seed(db, dataset, groups)

    report = analyze(db, dataset.id, ["gender"], model_version="keyword-v1")

    eo = report.metrics[EQUALIZED_ODDS]["gender"]
    assert eo["status"] == "ok"
    assert eo["tpr_spread"] == pytest.approx(0.5)
    assert eo["fpr_spread"] == pytest.approx(0.2)
    assert eo["value"] == pytest.approx(0.5)


def test_small_groups_are_insufficient(db, make_dataset):
    dataset = make_dataset()
    _seed(db, dataset, {"f": _rows(5, 10), "m": _rows(2, 10)})

    report = analyze(db, dataset.id, ["gender", "category"], model_version="keyword-v1")

    for metric in (DEMOGRAPHIC_PARITY, STATISTICAL_PARITY):
        assert report.metrics[metric]["gender"]["status"] == INSUFFICIENT_DATA
        assert report.metrics[metric]["gender"]["value"] is None
        assert report.metrics[metric]["category"]["status"] == INSUFFICIENT_DATA


def test_missing_outcomes_are_excluded(db, make_dataset):
    dataset = make_dataset()
    _seed(db, dataset, {"f": _rows(10, 35) + [("unknown", None)] * 3, "m": _rows(10, 35)})

    report = analyze(db, dataset.id, ["gender", "region"], model_version="keyword-v1")

    gender = report.metrics[DEMOGRAPHIC_PARITY]["gender"]
    assert gender["sample_size"] == 70
    assert gender["excluded"]["missing_outcome"] == 3
    assert report.metrics[DEMOGRAPHIC_PARITY]["region"]["excluded"]["missing_attribute"] == 73


def test_snapshot_respects_as_of_and_is_reproducible(db, make_dataset):
    dataset = make_dataset()
    _seed(db, dataset, {"f": _rows(10, 31), "m": _rows(5, 31)})

    first = analyze(db, dataset.id, ["gender"], model_version="v")
    second = analyze(db, dataset.id, ["gender"], model_version="v")
    empty = analyze(db, dataset.id, ["gender"], as_of=datetime(2000, 1, 1, tzinfo=timezone.utc), model_version="v")

    assert first.id != second.id
    assert first.snapshot_fingerprint == second.snapshot_fingerprint
    assert empty.sample_size == 0
    assert empty.metrics[DEMOGRAPHIC_PARITY]["gender"]["status"] == INSUFFICIENT_DATA
    assert [row.id for row in list_reports(db, dataset.id)][0] == empty.id
    assert get_report(db, first.id).snapshot_fingerprint == first.snapshot_fingerprint


def test_reports_are_immutable(db, make_dataset):
    dataset = make_dataset()
    report = analyze(db, dataset.id, ["gender"], model_version="v")
    report.sample_size = 10
    with pytest.raises(models.ImmutableRecordError):
        db.commit()
    db.rollback()


def test_unknown_dataset_and_report(db):
    with pytest.raises(NotFoundError):
        analyze(db, 12345, ["gender"], model_version="v")
    with pytest.raises(NotFoundError):
        get_report(db, 12345)


def test_attribute_names_may_match_snapshot_fields(db, make_dataset):
    dataset = make_dataset()
    _seed(db, dataset, {"f": _rows(30, 40, label="a"), "m": _rows(20, 40, label="b")})

    report = analyze(db, dataset.id, ["label", "gender"], label_field="")

    by_label = report.metrics[DEMOGRAPHIC_PARITY]["label"]
    assert by_label["status"] == "ok"
    assert by_label["reference_group"] == "a"
    assert by_label["value"] == pytest.approx(-0.25)
    assert report.metrics[DEMOGRAPHIC_PARITY]["gender"]["value"] == pytest.approx(-0.25)
    assert report.metrics[EQUALIZED_ODDS]["label"]["status"] == UNAVAILABLE


def test_reserved_attribute_names_are_rejected(db, make_dataset):
    dataset = make_dataset()
    with pytest.raises(ValidationError):
        analyze(db, dataset.id, [OUTCOME_COLUMN])


group_rows = st.lists(
    st.tuples(st.sampled_from(["a", "b", "c", "d"]), st.booleans(), st.one_of(st.none(), st.booleans())),
    min_size=0,
    max_size=300,
)


@hypothesis_settings(max_examples=60, deadline=None)
@given(rows=group_rows, min_group_size=st.integers(min_value=1, max_value=40))
def test_metrics_are_bounded(rows, min_group_size):
    frame = pd.DataFrame(
        [
            {QUESTION_COLUMN: idx, "group": group, OUTCOME_COLUMN: outcome, LABEL_COLUMN: label}
            for idx, (group, outcome, label) in enumerate(rows)
        ],
        columns=[QUESTION_COLUMN, "group", OUTCOME_COLUMN, LABEL_COLUMN],
    )
    metrics = compute_metrics(frame, ["group"], min_group_size=min_group_size)

    for name in (DEMOGRAPHIC_PARITY, STATISTICAL_PARITY):
        result = metrics[name]["group"]
        if result["status"] == "ok":
            assert -1.0 <= result["value"] <= 1.0
        else:
            assert result["status"] == INSUFFICIENT_DATA
            assert result["value"] is None
        for group in result["groups"].values():
            if group["count"] < min_group_size:
                assert group["status"] == INSUFFICIENT_DATA

    eo = metrics[EQUALIZED_ODDS]["group"]
    if eo["status"] == "ok":
        assert 0.0 <= eo["value"] <= 1.0
    else:
        assert eo["status"] in {INSUFFICIENT_DATA, UNAVAILABLE}
        assert eo["value"] is None
