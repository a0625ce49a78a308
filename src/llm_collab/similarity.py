"""Token-overlap similarity between responses."""

from __future__ import annotations

from collections.abc import Sequence
from itertools import combinations
import re

__all__ = [
    "DEFAULT_SIMILARITY_THRESHOLD",
    "consensus_level",
    "similarity_matrix",
    "split_sentences",
    "text_similarity",
    "tokenize",
]

DEFAULT_SIMILARITY_THRESHOLD = 0.6

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)
_SENTENCE_PATTERN = re.compile(r"(?<=[.!?。！？])\s+|\n+")


def tokenize(text: str) -> list[str]:
    return _TOKEN_PATTERN.findall(text.lower())


def split_sentences(text: str) -> list[str]:
    return [part.strip() for part in _SENTENCE_PATTERN.split(text) if part and part.strip()]


def _shingles(tokens: Sequence[str], size: int) -> set[tuple[str, ...]]:
    return {tuple(tokens[i : i + size]) for i in range(len(tokens) - size + 1)}


def text_similarity(a: str, b: str, *, ngram: int = 1) -> float:
    """Jaccard similarity on word n-grams, in ``[0, 1]``.

    Texts shorter than ``ngram`` words fall back to plain word sets. Two texts
    without any words are considered identical.
    """

    if ngram < 1:
        raise ValueError("ngram must be >= 1")
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0
    if ngram == 1 or len(tokens_a) < ngram or len(tokens_b) < ngram:
        set_a: set[object] = set(tokens_a)
        set_b: set[object] = set(tokens_b)
    else:
        set_a = set(_shingles(tokens_a, ngram))
        set_b = set(_shingles(tokens_b, ngram))
    return len(set_a & set_b) / len(set_a | set_b)


def similarity_matrix(texts: Sequence[str], *, ngram: int = 1) -> list[list[float]]:
    size = len(texts)
    matrix = [[1.0] * size for _ in range(size)]
    for i, j in combinations(range(size), 2):
        value = text_similarity(texts[i], texts[j], ngram=ngram)
        matrix[i][j] = value
        matrix[j][i] = value
    return matrix


def consensus_level(
    texts: Sequence[str],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    *,
    ngram: int = 1,
) -> float:
    """Fraction of response pairs whose similarity reaches ``threshold``.

    The comparison is inclusive: a pair scoring exactly ``threshold`` agrees,
    so ``threshold=1.0`` still counts identical answers. With fewer than two
    responses there is nothing to disagree with, so the
    level is ``1.0``.
    """

    if len(texts) < 2:
        return 1.0
    pairs = list(combinations(range(len(texts)), 2))
    agreeing = sum(
        1 for i, j in pairs if text_similarity(texts[i], texts[j], ngram=ngram) >= threshold
    )
    return agreeing / len(pairs)
