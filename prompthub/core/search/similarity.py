"""Vector math for ranking prompts by semantic closeness. Pure functions."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

DEFAULT_TOP_K = 20
DEFAULT_MIN_SCORE = 0.2


@dataclass(frozen=True)
class ScoredId:
    """A ranked candidate."""

    id: int
    score: float


def normalize(vector: Sequence[float]) -> list[float]:
    """Scale a vector to unit length. Zero vectors are returned unchanged."""
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0.0:
        return list(vector)
    return [x / norm for x in vector]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|).

    Vectors that are empty, of different lengths, or of zero magnitude are not
    comparable and score 0.
    """
    if len(a) != len(b) or not a:
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    magnitude = math.sqrt(norm_a) * math.sqrt(norm_b)
    if magnitude == 0.0:
        return 0.0
    return dot / magnitude


def rank(
    query: Sequence[float],
    candidates: Iterable[tuple[int, Optional[Sequence[float]]]],
    top_k: int = DEFAULT_TOP_K,
    min_score: float = DEFAULT_MIN_SCORE,
) -> list[ScoredId]:
    """Rank candidates by cosine similarity to `query`.

    Candidates without a vector are skipped. Scores below `min_score` are
    dropped. Equal scores keep candidate order (sorted() is stable).
    """
    if top_k <= 0:
        return []
    scored: list[ScoredId] = []
    for candidate_id, vector in candidates:
        if not vector:
            continue
        score = cosine_similarity(query, vector)
        if score >= min_score:
            scored.append(ScoredId(id=candidate_id, score=score))
    scored = sorted(scored, key=lambda hit: hit.score, reverse=True)
    return scored[:top_k]
