import json
import re
from typing import Any

import requests

from curation.core.config import settings


class AIServiceError(RuntimeError):
    pass


def is_enabled() -> bool:
    return bool(settings.OPENAI_API_KEY)


def _base_url(path: str) -> str:
    return f"{settings.OPENAI_BASE_URL.rstrip('/')}/{path.lstrip('/')}"


def _headers() -> dict[str, str]:
    if not settings.OPENAI_API_KEY:
        raise AIServiceError("OPENAI_API_KEY is not configured")
    return {
        "Authorization": f"Bearer {settings.OPENAI_API_KEY}",
        "Content-Type": "application/json",
    }


def _request_json(path: str, payload: dict[str, Any]) -> dict[str, Any]:
    try:
        response = requests.post(
            _base_url(path),
            headers=_headers(),
            json=payload,
            timeout=settings.AI_HTTP_TIMEOUT_SECONDS,
        )
    except requests.RequestException as error:
        raise AIServiceError(f"AI request failed: {error}") from error
    if response.status_code >= 400:
        try:
            data = response.json()
            error = data.get("error", {})
            message = error.get("message") or response.text
        except ValueError:
            message = response.text
        raise AIServiceError(f"AI request failed: {response.status_code} {message}")

    try:
        return response.json()
    except ValueError as error:
        raise AIServiceError("AI returned non-JSON response") from error


def _parse_json_text(text: str) -> dict[str, Any]:
    text = text.strip()
    if not text:
        return {}

    try:
        return json.loads(text)
    except ValueError:
        pass

    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        return {}

    try:
        return json.loads(match.group(0))
    except ValueError:
        return {}


def classify_question(text: str, *, categories: list[str]) -> dict[str, Any]:
    clean_text = text.strip()
    if not clean_text:
        return {}

    source = clean_text[: settings.AI_MAX_SOURCE_CHARS]
    prompt = (
        "You label questions for a training-data catalog. "
        f"Pick exactly one category from: {', '.join(categories)}. "
        "Pick a difficulty from: easy, medium, hard. "
        "Give a confidence between 0 and 1. "
        'Return only JSON: {"category":"...","difficulty":"...","confidence":0.0}.'
    )
    data = _request_json(
        "/chat/completions",
        {
            "model": settings.AI_CHAT_MODEL,
            "temperature": 0,
            "seed": 7,
            "messages": [
                {"role": "system", "content": prompt},
                {"role": "user", "content": source},
            ],
            "response_format": {"type": "json_object"},
        },
    )
    choices = data.get("choices") or []
    if not choices:
        raise AIServiceError("Classification response is empty")
    content = choices[0].get("message", {}).get("content", "")
    parsed = _parse_json_text(content)
    if not parsed:
        raise AIServiceError("Classification response is not JSON")
    return parsed
