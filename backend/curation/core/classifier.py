from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from functools import lru_cache
import hashlib
import logging
import math
import re
import threading
import time
from typing import Callable, Sequence

from curation.core import ai_service
from curation.core.config import settings
from curation.core.errors import ClassifierUnavailable, ValidationError
from curation.core.text_tokens import lexical_score, normalize_text, tokenize
from curation.core.validation import normalize_category, normalize_difficulty
from curation.models import Difficulty


logger = logging.getLogger(__name__)

FALLBACK_CATEGORY = "general"

CATEGORY_KEYWORDS: dict[str, list[str]] = {
    "math": [
        "equation", "solve", "integral", "derivative", "algebra", "geometry", "triangle",
        "prime", "fraction", "probability", "sum", "product", "calculate", "matrix",
        "polynomial", "theorem", "angle", "square root", "percent", "multiply", "divide",
        "arithmetic", "logarithm", "circle", "area", "perimeter",
    ],
    "science": [
        "atom", "molecule", "cell", "energy", "force", "gravity", "velocity", "photosynthesis",
        "chemical", "reaction", "element", "dna", "species", "electron", "newton", "physics",
        "chemistry", "biology", "organism", "acceleration", "planet",
    ],
    "history": [
        "war", "empire", "century", "revolution", "king", "queen", "dynasty", "treaty",
        "ancient", "president", "battle", "independence", "civilization", "colonial",
        "medieval", "history", "historical", "reign", "emperor", "pharaoh",
    ],
    "geography": [
        "capital", "country", "river", "mountain", "continent", "ocean", "population",
        "climate", "desert", "border", "latitude", "longitude", "geography", "island",
    ],
    "language": [
        "grammar", "verb", "noun", "adjective", "synonym", "antonym", "sentence", "translate",
        "meaning of", "spelling", "poem", "novel", "author", "literature", "metaphor",
    ],
    "programming": [
        "code", "function", "python", "algorithm", "variable", "loop", "compile", "database",
        "sql", "array", "recursion", "api", "programming", "software",
    ],
}

ARITHMETIC_PATTERN = re.compile(r"\d+(\.\d+)?\s*[-+*/^x×÷=]\s*\d+")

HARD_MARKERS = (
    "prove", "derive", "justify", "evaluate the integral", "analyze", "analyse",
    "compare and contrast", "explain why", "critically",
)
EASY_MARKERS = ("what is", "name the", "define", "which of", "true or false", "who was", "how many")


@dataclass(slots=True, frozen=True)
class Prediction:
    category: str | None
    difficulty: Difficulty | None
    confidence: float
    model_version: str
    needs_review: bool = False


class Classifier(ABC):
    model_version: str

    @abstractmethod
    def classify(self, text: str) -> Prediction:
        raise NotImplementedError

    def classify_batch(self, texts: Sequence[str]) -> list[Prediction]:
        return [self.classify(text) for text in texts]


def _softmax_probabilities(values: list[float], temperature: float = 0.28) -> list[float]:
    if not values:
        return []
    temp = max(0.01, temperature)
    max_value = max(values)
    exp_values = [math.exp((value - max_value) / temp) for value in values]
    total = sum(exp_values)
    if total <= 0:
        size = len(values)
        return [1.0 / size for _ in values]
    return [value / total for value in exp_values]


def _keyword_hits(normalized: str, tokens: set[str], keywords: list[str]) -> list[str]:
    hits: list[str] = []
    for keyword in keywords:
        if " " in keyword:
            if keyword in normalized:
                hits.append(keyword)
        elif keyword in tokens:
            hits.append(keyword)
    return hits


def estimate_difficulty(text: str) -> Difficulty:
    normalized = normalize_text(text)
    words = re.findall(r"[a-z0-9]+", normalized)
    score = 0
    if len(words) > 25:
        score += 1
    if len(words) > 50:
        score += 1
    if words:
        long_ratio = sum(1 for word in words if len(word) >= 9) / len(words)
        if long_ratio > 0.2:
            score += 1
    if any(marker in normalized for marker in HARD_MARKERS):
        score += 2
    if any(normalized.startswith(marker) or f" {marker} " in f" {normalized} " for marker in EASY_MARKERS):
        score -= 1
    if score <= 0:
        return Difficulty.easy
    if score <= 2:
        return Difficulty.medium
    return Difficulty.hard


class KeywordClassifier(Classifier):
    def __init__(
        self,
        *,
        model_version: str | None = None,
        catalog: dict[str, list[str]] | None = None,
    ) -> None:
        self.model_version = model_version or settings.CLASSIFIER_MODEL_VERSION
        self.catalog = {name: [item.lower() for item in words] for name, words in (catalog or CATEGORY_KEYWORDS).items()}

    def _score_categories(self, text: str) -> list[tuple[str, float]]:
        normalized = normalize_text(text)
        tokens = set(tokenize(normalized))
        scored: list[tuple[str, float]] = []
        for name in sorted(self.catalog):
            keywords = self.catalog[name]
            hits = _keyword_hits(normalized, tokens, keywords)
            if name == "math" and ARITHMETIC_PATTERN.search(normalized):
                hits.append("arithmetic expression")
            rule_score = min(0.95, 0.45 + 0.15 * len(hits)) if hits else 0.0
            lex = lexical_score(normalized, " ".join(keywords)) if hits else 0.0
            final_score = 0.75 * rule_score + 0.25 * lex
            scored.append((name, max(0.0, min(1.0, final_score))))
        scored.sort(key=lambda item: (-item[1], item[0]))
        return scored

    def classify(self, text: str) -> Prediction:
        difficulty = estimate_difficulty(text)
        scored = self._score_categories(text)
        if not scored or scored[0][1] <= 0.0:
            return Prediction(
                category=FALLBACK_CATEGORY,
                difficulty=difficulty,
                confidence=0.2,
                model_version=self.model_version,
            )

        top_rows = scored[:5]
        raw_confidence = top_rows[0][1]
        second_score = top_rows[1][1] if len(top_rows) > 1 else 0.0
        margin = max(0.0, raw_confidence - second_score)
        probabilities = _softmax_probabilities([score for _, score in top_rows])
        calibrated = 0.75 * raw_confidence + 0.25 * min(1.0, margin * 3.0)
        confidence = max(probabilities[0], calibrated)
        return Prediction(
            category=top_rows[0][0],
            difficulty=difficulty,
            confidence=round(max(0.0, min(1.0, confidence)), 6),
            model_version=self.model_version,
        )


class LLMClassifier(Classifier):
    def __init__(self, *, categories: list[str] | None = None, cache_size: int = 10000) -> None:
        self.categories = sorted(categories or CATEGORY_KEYWORDS) + [FALLBACK_CATEGORY]
        self.model_version = f"llm:{settings.AI_CHAT_MODEL}"
        self._cache: dict[str, Prediction] = {}
        self._cache_size = max(1, cache_size)
        self._lock = threading.Lock()

    def _cache_key(self, text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def classify(self, text: str) -> Prediction:
        key = self._cache_key(text)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        if not ai_service.is_enabled():
            raise ClassifierUnavailable("LLM classifier is not configured")
        try:
            parsed = ai_service.classify_question(text, categories=self.categories)
        except ai_service.AIServiceError as error:
            raise ClassifierUnavailable(str(error)) from error

        try:
            category = normalize_category(parsed.get("category"))
        except ValidationError:
            category = None
        if category not in self.categories:
            category = FALLBACK_CATEGORY
        try:
            difficulty = normalize_difficulty(parsed.get("difficulty"))
        except ValidationError:
            difficulty = None
        try:
            confidence = float(parsed.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        if not math.isfinite(confidence):
            confidence = 0.0

        prediction = Prediction(
            category=category,
            difficulty=difficulty or estimate_difficulty(text),
            confidence=round(max(0.0, min(1.0, confidence)), 6),
            model_version=self.model_version,
        )
        with self._lock:
            if len(self._cache) >= self._cache_size:
                self._cache.clear()
            self._cache[key] = prediction
        return prediction


class ClassifierService:
    def __init__(
        self,
        backend: Classifier,
        *,
        confidence_threshold: float | None = None,
        max_concurrency: int | None = None,
        batch_size: int | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.confidence_threshold = (
            settings.CLASSIFIER_CONFIDENCE_THRESHOLD if confidence_threshold is None else confidence_threshold
        )
        self.max_concurrency = max(1, max_concurrency or settings.CLASSIFIER_MAX_CONCURRENCY)
        self.batch_size = max(1, batch_size or settings.CLASSIFIER_BATCH_SIZE)
        self.max_retries = max(0, settings.CLASSIFIER_MAX_RETRIES if max_retries is None else max_retries)
        self.backoff_seconds = max(
            0.0, settings.CLASSIFIER_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self._semaphore = threading.BoundedSemaphore(self.max_concurrency)
        self._sleep = sleep

    @property
    def model_version(self) -> str:
        return self.backend.model_version

    def _flag(self, prediction: Prediction) -> Prediction:
        return replace(prediction, needs_review=prediction.confidence < self.confidence_threshold)

    def _call(self, fn, payload):
        attempt = 0
        while True:
            try:
                with self._semaphore:
                    return fn(payload)
            except ClassifierUnavailable as error:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error("classifier unavailable after %s attempts: %s", attempt, error)
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "classifier unavailable (attempt %s/%s), retrying in %.2fs: %s",
                    attempt,
                    self.max_retries,
                    delay,
                    error,
                )
                self._sleep(delay)

    def classify(self, text: str) -> Prediction:
        return self._flag(self._call(self.backend.classify, text))

    def classify_batch(self, texts: Sequence[str]) -> list[Prediction]:
        items = list(texts)
        if not items:
            return []
        chunks = [items[idx : idx + self.batch_size] for idx in range(0, len(items), self.batch_size)]
        if len(chunks) == 1 or self.max_concurrency <= 1:
            parts = [self._call(self.backend.classify_batch, chunk) for chunk in chunks]
        else:
            with ThreadPoolExecutor(
                max_workers=min(self.max_concurrency, len(chunks)),
                thread_name_prefix="classifier",
            ) as pool:
                parts = list(pool.map(lambda chunk: self._call(self.backend.classify_batch, chunk), chunks))

        results = [item for part in parts for item in part]
        if len(results) != len(items):
            raise ClassifierUnavailable(
                f"classifier returned {len(results)} results for {len(items)} inputs"
            )
        return [self._flag(item) for item in results]


def build_classifier(backend: str | None = None) -> Classifier:
    name = (backend or settings.CLASSIFIER_BACKEND or "keyword").strip().lower()
    if name == "keyword":
        return KeywordClassifier()
    if name == "llm":
        return LLMClassifier()
    raise ValueError(f"unknown classifier backend: {name}")


@lru_cache(maxsize=1)
def get_classifier_service() -> ClassifierService:
    return ClassifierService(build_classifier())
