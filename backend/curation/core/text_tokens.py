import re


def tokenize(text: str) -> list[str]:
    value = (text or "").lower()
    if not value:
        return []
    raw_tokens = re.findall(r"[\u4e00-\u9fff]+|[a-z0-9]+", value)
    tokens: list[str] = []
    for token in raw_tokens:
        if re.fullmatch(r"[\u4e00-\u9fff]+", token):
            tokens.append(token)
            if len(token) >= 4:
                for idx in range(0, len(token) - 1):
                    tokens.append(token[idx : idx + 2])
        else:
            tokens.append(token)
    return tokens


def dedupe(items: list[str]) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for item in items:
        if not item or item in seen:
            continue
        seen.add(item)
        output.append(item)
    return output


def normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").lower()).strip()


def lexical_score(query: str, corpus: str) -> float:
    q = normalize_text(query)
    body = normalize_text(corpus)
    if not q or not body:
        return 0.0
    if q in body:
        return 1.0
    query_tokens = dedupe(tokenize(q))
    corpus_tokens = dedupe(tokenize(body))
    if not query_tokens or not corpus_tokens:
        return 0.0
    corpus_set = set(corpus_tokens)
    hits = sum(1 for token in query_tokens if token in corpus_set)
    overlap = hits / max(1, min(len(query_tokens), len(corpus_tokens)))
    coverage = hits / max(1, len(corpus_tokens))
    precision = hits / max(1, len(query_tokens))
    score = 0.5 * overlap + 0.25 * coverage + 0.25 * precision
    return max(0.0, min(1.0, score))

