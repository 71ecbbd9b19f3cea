"""
Opinion similarity and consensus scoring.

Similarity is the Jaccard index of the case-normalized, whitespace-delimited
token sets of two opinions.
"""

from itertools import combinations
from typing import FrozenSet, Sequence

from ..models.core import Opinion


def tokenize(text: str) -> FrozenSet[str]:
    return frozenset(text.lower().split())


def similarity(a: str, b: str) -> float:
    """Jaccard similarity of two texts in [0, 1]; two empty texts are identical."""
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    union = tokens_a | tokens_b
    if not union:
        return 1.0
    return len(tokens_a & tokens_b) / len(union)


def round_consensus(opinions: Sequence[Opinion]) -> float:
    """Mean pairwise similarity over all unordered pairs; 1.0 for fewer than two opinions."""
    if len(opinions) < 2:
        return 1.0
    pairs = list(combinations(opinions, 2))
    return sum(similarity(a.content, b.content) for a, b in pairs) / len(pairs)


def weighted_consensus(opinions: Sequence[Opinion]) -> float:
    """
    Pairwise similarity weighted by the product of the two opinions' confidences.

    Falls back to the unweighted mean when every weight is zero.
    """
    if len(opinions) < 2:
        return 1.0

    weighted_sum = 0.0
    total_weight = 0.0
    for a, b in combinations(opinions, 2):
        weight = a.confidence * b.confidence
        weighted_sum += weight * similarity(a.content, b.content)
        total_weight += weight

    if total_weight == 0:
        return round_consensus(opinions)
    # Clamp float drift so callers can rely on [0, 1].
    return min(1.0, max(0.0, weighted_sum / total_weight))
