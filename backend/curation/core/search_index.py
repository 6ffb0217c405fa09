from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import heapq
import itertools
import logging
import queue
import threading
import time
from typing import Callable, Iterable

from sqlalchemy import or_
from sqlalchemy.orm import Session

from curation import models
from curation.core.config import settings
from curation.core.db_read_write import WriteSessionLocal
from curation.core.errors import IndexTimeout
from curation.core.text_tokens import dedupe, normalize_text, tokenize
from curation.core.validation import normalize_category, normalize_difficulty


logger = logging.getLogger(__name__)

SYNC_CHUNK_SIZE = 500
SEARCH_SCAN_CHUNK_SIZE = 1000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SearchQuery:
    keyword: str | None = None
    category: str | None = None
    difficulty: str | None = None
    dataset_id: int | None = None


@dataclass(slots=True)
class SearchHit:
    question: models.Question
    relevance: float


@dataclass(slots=True)
class SearchPage:
    items: list[SearchHit]
    total: int
    page: int
    page_size: int


@dataclass(slots=True)
class IndexTicket:
    job_id: int
    question_ids: list[int]
    submitted_at: float = field(default_factory=time.monotonic)
    done: threading.Event = field(default_factory=threading.Event)
    acked_at: float | None = None
    error: str | None = None
    stats: dict[str, int] = field(default_factory=dict)

    @property
    def lag_ms(self) -> float | None:
        if self.acked_at is None:
            return None
        return (self.acked_at - self.submitted_at) * 1000.0

    @property
    def succeeded(self) -> bool:
        return self.done.is_set() and self.error is None

    def wait(self, timeout: float | None = None) -> bool:
        return self.done.wait(timeout)


def build_search_text(text: str) -> str:
    return " ".join(dedupe(tokenize(normalize_text(text))))


def _chunks(values: list[int], size: int) -> list[list[int]]:
    return [values[idx : idx + size] for idx in range(0, len(values), size)]


def _normalize_ids(question_ids: list[int]) -> list[int]:
    seen: set[int] = set()
    normalized: list[int] = []
    for raw_id in question_ids:
        if raw_id is None or raw_id <= 0 or raw_id in seen:
            continue
        seen.add(raw_id)
        normalized.append(raw_id)
    return normalized


def _sync_entry_fields(entry: models.QuestionIndexEntry, question: models.Question) -> bool:
    category = question.category
    difficulty = question.difficulty.value if question.difficulty else None
    search_text = build_search_text(question.text)
    changed = False
    if entry.dataset_id != question.dataset_id:
        entry.dataset_id = question.dataset_id
        changed = True
    if entry.category != category:
        entry.category = category
        changed = True
    if entry.difficulty != difficulty:
        entry.difficulty = difficulty
        changed = True
    if entry.search_text != search_text:
        entry.search_text = search_text
        changed = True
    if changed:
        entry.indexed_at = utc_now()
    return changed


def sync_question_entries(db: Session, question_ids: list[int]) -> dict[str, int]:
    normalized_ids = _normalize_ids(question_ids)
    stats = {"requested": len(normalized_ids), "created": 0, "updated": 0, "removed": 0, "skipped": 0}
    for chunk in _chunks(normalized_ids, SYNC_CHUNK_SIZE):
        questions = {
            row.id: row
            for row in db.query(models.Question).filter(models.Question.id.in_(chunk)).all()
        }
        entries = {
            row.question_id: row
            for row in db.query(models.QuestionIndexEntry)
            .filter(models.QuestionIndexEntry.question_id.in_(chunk))
            .all()
        }
        for question_id in chunk:
            question = questions.get(question_id)
            entry = entries.get(question_id)
            if question is None:
                if entry is not None:
                    db.delete(entry)
                    stats["removed"] += 1
                else:
                    stats["skipped"] += 1
                continue
            if entry is None:
                db.add(
                    models.QuestionIndexEntry(
                        question_id=question.id,
                        dataset_id=question.dataset_id,
                        category=question.category,
                        difficulty=question.difficulty.value if question.difficulty else None,
                        search_text=build_search_text(question.text),
                        indexed_at=utc_now(),
                    )
                )
                stats["created"] += 1
            elif _sync_entry_fields(entry, question):
                db.add(entry)
                stats["updated"] += 1
            else:
                stats["skipped"] += 1
    return stats


def rebuild_dataset_index(db: Session, dataset_id: int) -> dict[str, int]:
    question_ids = [
        row[0]
        for row in db.query(models.Question.id)
        .filter(models.Question.dataset_id == dataset_id)
        .order_by(models.Question.id.asc())
        .all()
    ]
    stale_ids = [
        row[0]
        for row in db.query(models.QuestionIndexEntry.question_id)
        .outerjoin(models.Question, models.Question.id == models.QuestionIndexEntry.question_id)
        .filter(
            models.QuestionIndexEntry.dataset_id == dataset_id,
            models.Question.id.is_(None),
        )
        .all()
    ]
    return sync_question_entries(db, question_ids + stale_ids)


class IndexWorker:
    def __init__(
        self,
        session_factory: Callable[[], Session] = WriteSessionLocal,
        *,
        max_jobs: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._queue: queue.Queue[IndexTicket | None] = queue.Queue(
            maxsize=max(1, max_jobs or settings.INDEX_QUEUE_MAX_JOBS)
        )
        self._job_ids = itertools.count(1)
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            self._thread = threading.Thread(target=self._run, name="index-worker", daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._queue.put(None)
            self._thread = None
        thread.join(timeout=timeout)

    def submit(self, question_ids: list[int]) -> IndexTicket:
        self.start()
        ticket = IndexTicket(job_id=next(self._job_ids), question_ids=_normalize_ids(question_ids))
        self._queue.put(ticket)
        return ticket

    def wait(self, ticket: IndexTicket, timeout: float | None = None, *, dataset_id: int | None = None) -> IndexTicket:
        limit = settings.INDEX_ACK_TIMEOUT_SECONDS if timeout is None else timeout
        if not ticket.wait(max(0.0, limit)):
            raise IndexTimeout(
                f"index job {ticket.job_id} was not acknowledged within {limit:.1f}s",
                dataset_id=dataset_id,
            )
        if ticket.error:
            raise IndexTimeout(
                f"index job {ticket.job_id} failed: {ticket.error}",
                dataset_id=dataset_id,
            )
        return ticket

    def _run(self) -> None:
        while True:
            ticket = self._queue.get()
            try:
                if ticket is None:
                    return
                self._process(ticket)
            finally:
                self._queue.task_done()

    def _process(self, ticket: IndexTicket) -> None:
        db = self._session_factory()
        try:
            ticket.stats = sync_question_entries(db, ticket.question_ids)
            db.commit()
        except Exception as error:  # noqa: BLE001
            db.rollback()
            ticket.error = str(error)[:500]
            logger.exception("index job failed: job_id=%s size=%s", ticket.job_id, len(ticket.question_ids))
        finally:
            db.close()
            ticket.acked_at = time.monotonic()
            ticket.done.set()

        lag_ms = ticket.lag_ms or 0.0
        if lag_ms > settings.INDEX_LAG_BOUND_MS:
            logger.warning(
                "index lag above bound: job_id=%s size=%s lag_ms=%.1f bound_ms=%s",
                ticket.job_id,
                len(ticket.question_ids),
                lag_ms,
                settings.INDEX_LAG_BOUND_MS,
            )


_WORKER_LOCK = threading.Lock()
_WORKER: IndexWorker | None = None


def get_index_worker() -> IndexWorker:
    global _WORKER
    with _WORKER_LOCK:
        if _WORKER is None:
            _WORKER = IndexWorker()
        return _WORKER


def shutdown_index_worker() -> None:
    global _WORKER
    with _WORKER_LOCK:
        worker = _WORKER
        _WORKER = None
    if worker is not None:
        worker.stop()


def keyword_relevance(keyword: str, search_text: str) -> float:
    return _token_relevance(dedupe(tokenize(normalize_text(keyword))), search_text)


def _token_relevance(query_tokens: list[str], search_text: str) -> float:
    if not query_tokens or not search_text:
        return 0.0
    body_tokens = search_text.split(" ")
    body_set = set(body_tokens)
    hits = sum(1 for token in query_tokens if token in body_set)
    if hits == 0:
        return 0.0
    score = hits / len(query_tokens)
    phrase = " ".join(query_tokens)
    if len(query_tokens) > 1 and phrase in " ".join(body_tokens):
        score = min(1.0, score + 0.1)
    return round(score, 6)


def _top_ranked(rows: Iterable[tuple[int, str | None]], tokens: list[str], limit: int) -> tuple[int, list[tuple[int, float]]]:
    """Count every match and keep the best `limit` by relevance desc, then id asc."""
    total = 0
    # min-heap on (relevance, -id): the root is the weakest hit kept so far
    kept: list[tuple[float, int]] = []
    for question_id, search_text in rows:
        relevance = _token_relevance(tokens, search_text or "")
        if relevance <= 0:
            continue
        total += 1
        item = (relevance, -question_id)
        if len(kept) < limit:
            heapq.heappush(kept, item)
        elif item > kept[0]:
            heapq.heapreplace(kept, item)
    ranked = sorted(((-neg_id, relevance) for relevance, neg_id in kept), key=lambda hit: (-hit[1], hit[0]))
    return total, ranked


def _apply_filters(query, search: SearchQuery):
    category = normalize_category(search.category)
    if category:
        query = query.filter(models.QuestionIndexEntry.category == category)
    difficulty = normalize_difficulty(search.difficulty)
    if difficulty:
        query = query.filter(models.QuestionIndexEntry.difficulty == difficulty.value)
    if search.dataset_id is not None:
        query = query.filter(models.QuestionIndexEntry.dataset_id == search.dataset_id)
    return query


def _load_questions(db: Session, question_ids: list[int]) -> dict[int, models.Question]:
    if not question_ids:
        return {}
    rows = db.query(models.Question).filter(models.Question.id.in_(question_ids)).all()
    return {row.id: row for row in rows}


def search(
    db: Session,
    search_query: SearchQuery,
    *,
    page: int = 1,
    page_size: int | None = None,
) -> SearchPage:
    page = max(1, page)
    size = max(1, min(settings.SEARCH_MAX_PAGE_SIZE, page_size or settings.SEARCH_DEFAULT_PAGE_SIZE))
    offset = (page - 1) * size
    base = _apply_filters(db.query(models.QuestionIndexEntry), search_query)

    keyword = (search_query.keyword or "").strip()
    ranked: list[tuple[int, float]]
    if keyword:
        tokens = dedupe(tokenize(normalize_text(keyword)))
        if not tokens:
            return SearchPage(items=[], total=0, page=page, page_size=size)
        candidates = (
            base.with_entities(models.QuestionIndexEntry.question_id, models.QuestionIndexEntry.search_text)
            .filter(or_(*[models.QuestionIndexEntry.search_text.contains(token) for token in tokens]))
            .yield_per(SEARCH_SCAN_CHUNK_SIZE)
        )
        total, ranked = _top_ranked(candidates, tokens, offset + size)
        ranked = ranked[offset:]
    else:
        total = base.count()
        rows = (
            base.with_entities(models.QuestionIndexEntry.question_id)
            .order_by(models.QuestionIndexEntry.question_id.asc())
            .offset(offset)
            .limit(size)
            .all()
        )
        ranked = [(row[0], 0.0) for row in rows]

    questions = _load_questions(db, [question_id for question_id, _ in ranked])
    items = [
        SearchHit(question=questions[question_id], relevance=relevance)
        for question_id, relevance in ranked
        if question_id in questions
    ]
    return SearchPage(items=items, total=total, page=page, page_size=size)
