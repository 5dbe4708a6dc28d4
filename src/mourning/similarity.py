"""Lightweight similarity scoring between messages.

The score is a weighted sum of three named terms::

    similarity = temporal_weight * temporal_proximity
               + length_weight   * length_similarity
               + semantic_weight * semantic_similarity

``semantic_similarity`` is a placeholder for future embedding scoring and
always returns 0.0, so today's scores top out at
``temporal_weight + length_weight`` (0.8 with defaults).  Keeping it as an
explicit term means the weights still sum to 1.0 and enabling it later does
not silently rescale the other two.
"""

from __future__ import annotations

from typing import Iterable

from mourning.config import SimilarityWeights
from mourning.messages import Message

_SECONDS_PER_DAY = 86_400.0


def temporal_proximity(a: Message, b: Message, window_days: float = 30.0) -> float:
    """1.0 for simultaneous messages, falling linearly to 0.0 at *window_days*."""
    delta = abs((a.created_at - b.created_at).total_seconds())
    return max(0.0, 1.0 - delta / (window_days * _SECONDS_PER_DAY))


def length_similarity(a: Message, b: Message, max_length: int = 280) -> float:
    """1.0 for equal lengths, 0.0 when the lengths differ by *max_length*."""
    diff = abs(len(a.content) - len(b.content))
    return max(0.0, 1.0 - diff / max_length)


def semantic_similarity(a: Message, b: Message) -> float:  # noqa: ARG001
    """Reserved term for embedding-based scoring; inert for now."""
    return 0.0


def similarity(a: Message, b: Message, weights: SimilarityWeights | None = None) -> float:
    """Composite similarity of *a* and *b* in ``[0, 1]``."""
    w = weights or SimilarityWeights()
    return (
        w.temporal_weight * temporal_proximity(a, b, w.temporal_window_days)
        + w.length_weight * length_similarity(a, b, w.max_length)
        + w.semantic_weight * semantic_similarity(a, b)
    )


def rank_by_similarity(
    focus: Message,
    candidates: Iterable[Message],
    weights: SimilarityWeights | None = None,
) -> list[tuple[Message, float]]:
    """Score *candidates* against *focus*, best first.

    Ties are broken by ascending id so the ranking is deterministic.  The
    focus itself is skipped if present among the candidates.
    """
    scored = [
        (m, similarity(focus, m, weights)) for m in candidates if m.id != focus.id
    ]
    scored.sort(key=lambda pair: (-pair[1], pair[0].id))
    return scored
