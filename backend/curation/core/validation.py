from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Any, Iterable, Mapping

from curation.core.config import settings
from curation.core.errors import OrphanAnswerError, SchemaViolation, ValidationError
from curation.models import Difficulty


QUESTION_KIND = "question"
ANSWER_KIND = "answer"

KIND_FIELDS = ("record_type", "type")
ID_FIELDS = ("id", "external_id")
METADATA_FIELD = "metadata"

ANSWER_SHAPED_FIELDS = frozenset({"answer_text", "answer", "answers", "correct_answer", "question_id"})
QUESTION_SHAPED_FIELDS = frozenset({"question_text", "category", "difficulty", "choices", "options"})

QUESTION_FIELDS = frozenset({"text", "question_text", "category", "difficulty"})
ANSWER_FIELDS = frozenset({"text", "answer_text", "question_id"})
RESERVED_FIELDS = frozenset(KIND_FIELDS) | frozenset(ID_FIELDS) | {METADATA_FIELD}

DIFFICULTY_ALIASES = {
    "easy": Difficulty.easy,
    "beginner": Difficulty.easy,
    "low": Difficulty.easy,
    "1": Difficulty.easy,
    "medium": Difficulty.medium,
    "intermediate": Difficulty.medium,
    "moderate": Difficulty.medium,
    "2": Difficulty.medium,
    "hard": Difficulty.hard,
    "advanced": Difficulty.hard,
    "high": Difficulty.hard,
    "3": Difficulty.hard,
}

MetadataValue = str | int | float | bool


@dataclass(slots=True)
class ValidatedQuestion:
    external_id: str
    text: str
    category: str | None = None
    difficulty: Difficulty | None = None
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    record_number: int | None = None

    @property
    def has_source_labels(self) -> bool:
        return self.category is not None or self.difficulty is not None


@dataclass(slots=True)
class ValidatedAnswer:
    external_id: str
    question_external_id: str
    text: str
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    record_number: int | None = None


def is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return bool(value)
    return True


def _clean_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _present_keys(record: Mapping[str, Any]) -> set[str]:
    keys = {str(key).strip().lower() for key, value in record.items() if is_present(value)}
    nested = record.get(METADATA_FIELD)
    if isinstance(nested, Mapping):
        keys |= {str(key).strip().lower() for key, value in nested.items() if is_present(value)}
    return keys


def record_kind(record: Mapping[str, Any]) -> str | None:
    for key in KIND_FIELDS:
        raw = record.get(key)
        if is_present(raw):
            value = _clean_str(raw).lower()
            if value in {QUESTION_KIND, ANSWER_KIND}:
                return value
            return None
    if is_present(record.get("question_id")):
        return ANSWER_KIND
    return QUESTION_KIND


def _record_label(record: Mapping[str, Any], record_number: int | None) -> str:
    for key in ID_FIELDS:
        if is_present(record.get(key)):
            return f"id={_clean_str(record.get(key))}"
    if record_number is not None:
        return f"record {record_number}"
    return "record"


def _cross_contamination(record: Mapping[str, Any], kind: str | None) -> set[str]:
    present = _present_keys(record)
    if kind == QUESTION_KIND:
        return present & ANSWER_SHAPED_FIELDS
    if kind == ANSWER_KIND:
        return present & QUESTION_SHAPED_FIELDS
    return set()


def assert_separation(
    batch: Iterable[Mapping[str, Any]],
    *,
    first_record_number: int = 1,
) -> None:
    for offset, record in enumerate(batch):
        if not isinstance(record, Mapping):
            continue
        kind = record_kind(record)
        leaked = _cross_contamination(record, kind)
        if leaked:
            record_number = first_record_number + offset
            raise SchemaViolation(
                f"{kind} {_record_label(record, record_number)} carries "
                f"{'answer' if kind == QUESTION_KIND else 'question'} fields: {', '.join(sorted(leaked))}",
                record_number=record_number,
            )


def normalize_difficulty(value: Any) -> Difficulty | None:
    if not is_present(value):
        return None
    if isinstance(value, Difficulty):
        return value
    picked = DIFFICULTY_ALIASES.get(_clean_str(value).lower())
    if picked is None:
        raise ValidationError(f"unknown difficulty: {_clean_str(value)[:40]}")
    return picked


def normalize_category(value: Any) -> str | None:
    if not is_present(value):
        return None
    category = " ".join(_clean_str(value).lower().split())
    if len(category) > 80:
        raise ValidationError("category is longer than 80 characters")
    return category


def _validate_metadata_value(key: str, value: Any) -> MetadataValue:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError(f"metadata '{key}' is not a finite number")
        return value
    if isinstance(value, str):
        text = value.strip()
        if len(text) > settings.INGEST_MAX_METADATA_VALUE_CHARS:
            raise ValidationError(f"metadata '{key}' exceeds {settings.INGEST_MAX_METADATA_VALUE_CHARS} characters")
        return text
    raise ValidationError(f"metadata '{key}' must be a string, number or boolean")


def collect_metadata(record: Mapping[str, Any], known_fields: frozenset[str]) -> dict[str, MetadataValue]:
    metadata: dict[str, MetadataValue] = {}
    nested = record.get(METADATA_FIELD)
    if is_present(nested):
        if not isinstance(nested, Mapping):
            raise ValidationError("metadata must be an object of primitive values")
        for key, value in nested.items():
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            metadata[str(key).strip()] = _validate_metadata_value(str(key), value)

    for key, value in record.items():
        name = str(key).strip()
        lowered = name.lower()
        if lowered in known_fields or lowered in RESERVED_FIELDS or not name:
            continue
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        metadata[name] = _validate_metadata_value(name, value)

    if len(metadata) > settings.INGEST_MAX_METADATA_KEYS:
        raise ValidationError(f"metadata has more than {settings.INGEST_MAX_METADATA_KEYS} keys")
    return metadata


def _validate_text(value: Any, label: str) -> str:
    if value is not None and not isinstance(value, (str, int, float)):
        raise ValidationError(f"{label} text must be a string")
    text = _clean_str(value)
    if not text:
        raise ValidationError(f"{label} text is empty")
    if len(text) > settings.INGEST_MAX_TEXT_CHARS:
        raise ValidationError(f"{label} text exceeds {settings.INGEST_MAX_TEXT_CHARS} characters")
    return text


def _external_id(record: Mapping[str, Any], record_number: int | None) -> str:
    for key in ID_FIELDS:
        value = _clean_str(record.get(key))
        if value:
            if len(value) > 120:
                raise ValidationError("id is longer than 120 characters")
            return value
    if record_number is None:
        raise ValidationError("record has no id")
    return f"row-{record_number}"


def validate_question(record: Mapping[str, Any], *, record_number: int | None = None) -> ValidatedQuestion:
    if not isinstance(record, Mapping):
        raise ValidationError("question record must be an object", record_number=record_number)
    leaked = _cross_contamination(record, QUESTION_KIND)
    if leaked:
        raise SchemaViolation(
            f"question {_record_label(record, record_number)} carries answer fields: {', '.join(sorted(leaked))}",
            record_number=record_number,
        )
    try:
        text = record.get("text")
        if not is_present(text):
            text = record.get("question_text")
        return ValidatedQuestion(
            external_id=_external_id(record, record_number),
            text=_validate_text(text, "question"),
            category=normalize_category(record.get("category")),
            difficulty=normalize_difficulty(record.get("difficulty")),
            metadata=collect_metadata(record, QUESTION_FIELDS),
            record_number=record_number,
        )
    except ValidationError as error:
        error.record_number = record_number
        raise


def validate_answer(
    record: Mapping[str, Any],
    known_question_ids: set[str] | frozenset[str],
    *,
    record_number: int | None = None,
) -> ValidatedAnswer:
    if not isinstance(record, Mapping):
        raise ValidationError("answer record must be an object", record_number=record_number)
    leaked = _cross_contamination(record, ANSWER_KIND)
    if leaked:
        raise SchemaViolation(
            f"answer {_record_label(record, record_number)} carries question fields: {', '.join(sorted(leaked))}",
            record_number=record_number,
        )
    question_ref = _clean_str(record.get("question_id"))
    if not question_ref:
        raise OrphanAnswerError(
            f"answer {_record_label(record, record_number)} has no question_id",
            record_number=record_number,
        )
    if question_ref not in known_question_ids:
        raise OrphanAnswerError(
            f"answer {_record_label(record, record_number)} references unknown question_id={question_ref}",
            record_number=record_number,
        )
    try:
        text = record.get("text")
        if not is_present(text):
            text = record.get("answer_text")
        return ValidatedAnswer(
            external_id=_external_id(record, record_number),
            question_external_id=question_ref,
            text=_validate_text(text, "answer"),
            metadata=collect_metadata(record, ANSWER_FIELDS),
            record_number=record_number,
        )
    except ValidationError as error:
        error.record_number = record_number
        raise
