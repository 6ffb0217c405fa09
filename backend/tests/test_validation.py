from hypothesis import given, strategies as st
import pytest

from curation.core.errors import OrphanAnswerError, SchemaViolation, ValidationError
from curation.core.validation import (
    ANSWER_KIND,
    ANSWER_SHAPED_FIELDS,
    QUESTION_KIND,
    QUESTION_SHAPED_FIELDS,
    assert_separation,
    normalize_difficulty,
    record_kind,
    validate_answer,
    validate_question,
)
from curation.models import Difficulty


safe_keys = st.text(alphabet="abcdefghijklmnopqrstuvwxyz_", min_size=1, max_size=12).filter(
    lambda key: key not in ANSWER_SHAPED_FIELDS | QUESTION_SHAPED_FIELDS | {"type", "record_type", "metadata"}
)
non_empty = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789 ", min_size=1, max_size=30).filter(
    lambda value: value.strip()
)


@given(
    leaked=st.sampled_from(sorted(ANSWER_SHAPED_FIELDS)),
    value=non_empty,
    extras=st.dictionaries(safe_keys, non_empty, max_size=4),
    nested=st.booleans(),
)
def test_question_with_answer_field_is_rejected(leaked, value, extras, nested):
    record = {"record_type": "question", "text": "What is the capital of France?", **extras}
    if nested:
        record["metadata"] = {leaked: value}
    else:
        record[leaked] = value
    with pytest.raises(SchemaViolation):
        assert_separation([record])


@given(
    leaked=st.sampled_from(sorted(QUESTION_SHAPED_FIELDS)),
    value=non_empty,
    extras=st.dictionaries(safe_keys, non_empty, max_size=4),
)
def test_answer_with_question_field_is_rejected(leaked, value, extras):
    record = {"record_type": "answer", "question_id": "q1", "text": "Paris", **extras, leaked: value}
    with pytest.raises(SchemaViolation):
        assert_separation([record])


@given(extras=st.dictionaries(safe_keys, non_empty, max_size=6))
def test_clean_records_pass_separation(extras):
    batch = [
        {"id": "q1", "text": "Name the largest ocean", **extras},
        {"id": "a1", "question_id": "q1", "text": "Pacific", **extras},
    ]
    assert_separation(batch)


def test_separation_reports_record_number():
    batch = [
        {"id": "q1", "text": "ok"},
        {"record_type": "question", "id": "q2", "text": "leaky", "correct_answer": "b"},
    ]
    with pytest.raises(SchemaViolation) as info:
        assert_separation(batch, first_record_number=11)
    assert info.value.record_number == 12
    assert "correct_answer" in info.value.message


def test_blank_answer_columns_do_not_count_as_leakage():
    assert_separation([{"record_type": "question", "id": "q1", "text": "x", "question_id": "", "answer_text": " "}])


def test_record_kind():
    assert record_kind({"text": "x"}) == QUESTION_KIND
    assert record_kind({"question_id": "q1", "text": "x"}) == ANSWER_KIND
    assert record_kind({"type": "Answer", "question_id": "q1"}) == ANSWER_KIND
    assert record_kind({"record_type": "comment"}) is None


def test_validate_question_normalizes_labels_and_metadata():
    question = validate_question(
        {"id": " q7 ", "question_text": "Define osmosis", "category": " Science ", "difficulty": "Beginner", "grade": 7},
        record_number=3,
    )
    assert question.external_id == "q7"
    assert question.text == "Define osmosis"
    assert question.category == "science"
    assert question.difficulty == Difficulty.easy
    assert question.metadata == {"grade": 7}
    assert question.has_source_labels


def test_validate_question_defaults_id_from_record_number():
    question = validate_question({"text": "Who was the first emperor of Rome?"}, record_number=42)
    assert question.external_id == "row-42"
    assert not question.has_source_labels


def test_validate_question_rejects_empty_text():
    with pytest.raises(ValidationError) as info:
        validate_question({"id": "q1", "text": "   "}, record_number=5)
    assert info.value.record_number == 5


def test_validate_question_rejects_nested_metadata_values():
    with pytest.raises(ValidationError):
        validate_question({"id": "q1", "text": "x", "metadata": {"tags": ["a", "b"]}})


def test_validate_answer_requires_known_question():
    answer = validate_answer({"id": "a1", "question_id": "q1", "answer_text": "4"}, {"q1"})
    assert answer.question_external_id == "q1"
    assert answer.text == "4"
    with pytest.raises(OrphanAnswerError):
        validate_answer({"id": "a2", "question_id": "q9", "text": "4"}, {"q1"}, record_number=9)
    with pytest.raises(OrphanAnswerError):
        validate_answer({"record_type": "answer", "id": "a3", "text": "4"}, {"q1"})


def test_normalize_difficulty():
    assert normalize_difficulty("HARD") == Difficulty.hard
    assert normalize_difficulty("2") == Difficulty.medium
    assert normalize_difficulty("") is None
    with pytest.raises(ValidationError):
        normalize_difficulty("impossible")
