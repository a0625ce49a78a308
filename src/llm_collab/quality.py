"""Heuristic quality scoring for provider responses."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, fields
import math

from .provider_spi import Response
from .similarity import similarity_matrix, split_sentences, tokenize

__all__ = [
    "DIMENSIONS",
    "QualityScore",
    "QualityWeights",
    "score_responses",
]

DIMENSIONS = ("accuracy", "completeness", "clarity", "novelty", "relevance")

_STOPWORDS = frozenset(
    "a an and are as at be but by can do does for from how i in is it of on or that the "
    "this to was what when where which who why will with you your".split()
)
_IDEAL_SENTENCE_WORDS = (8.0, 25.0)
_STANDALONE_TARGET_WORDS = 50
_TRUNCATION_PENALTY = 0.8


@dataclass(frozen=True)
class QualityWeights:
    accuracy: float = 0.2
    completeness: float = 0.2
    clarity: float = 0.2
    novelty: float = 0.2
    relevance: float = 0.2

    def __post_init__(self) -> None:
        values = [getattr(self, item.name) for item in fields(self)]
        if any(value < 0 or math.isnan(value) for value in values):
            raise ValueError("quality weights must be non-negative")
        if not math.isclose(sum(values), 1.0, abs_tol=1e-6):
            raise ValueError("quality weights must sum to 1")

    @classmethod
    def from_mapping(cls, data: Mapping[str, float] | None) -> QualityWeights:
        if not data:
            return cls()
        unknown = set(data) - set(DIMENSIONS)
        if unknown:
            raise ValueError(f"unknown quality dimensions: {', '.join(sorted(unknown))}")
        return cls(**{name: float(data.get(name, 0.0)) for name in DIMENSIONS})

    def as_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in DIMENSIONS}


@dataclass(frozen=True)
class QualityScore:
    overall: float
    dimensions: Mapping[str, float]


def _clarity(text: str) -> float:
    sentences = split_sentences(text)
    if not sentences:
        return 0.0
    words = sum(len(tokenize(sentence)) for sentence in sentences)
    average = words / len(sentences)
    low, high = _IDEAL_SENTENCE_WORDS
    if average < low:
        return 0.5 + 0.5 * (average / low)
    if average > high:
        return max(0.2, high / average)
    return 1.0


def _relevance(prompt_terms: set[str], text: str) -> float:
    if not prompt_terms:
        return 1.0
    present = set(tokenize(text)) & prompt_terms
    return len(present) / len(prompt_terms)


def _prompt_terms(prompt: str) -> set[str]:
    return {token for token in tokenize(prompt) if len(token) > 2 and token not in _STOPWORDS}


def score_responses(
    prompt: str,
    responses: Sequence[Response],
    weights: QualityWeights | None = None,
) -> list[QualityScore]:
    """Score each response against the prompt and its peers, in input order."""

    weights = weights or QualityWeights()
    if not responses:
        return []
    texts = [response.content for response in responses]
    matrix = similarity_matrix(texts)
    lengths = [len(tokenize(text)) for text in texts]
    longest = max(lengths)
    terms = _prompt_terms(prompt)
    alone = len(responses) == 1

    scores: list[QualityScore] = []
    for index, response in enumerate(responses):
        peers = [matrix[index][other] for other in range(len(texts)) if other != index]
        if alone:
            accuracy = 0.5
            novelty = 0.5
            completeness = min(1.0, lengths[index] / _STANDALONE_TARGET_WORDS)
        else:
            accuracy = sum(peers) / len(peers)
            novelty = 1.0 - max(peers)
            completeness = lengths[index] / longest if longest else 0.0
        if response.finish_reason == "length":
            completeness *= _TRUNCATION_PENALTY
        dimensions = {
            "accuracy": accuracy,
            "completeness": completeness,
            "clarity": _clarity(response.content),
            "novelty": novelty,
            "relevance": _relevance(terms, response.content),
        }
        overall = sum(dimensions[name] * getattr(weights, name) for name in DIMENSIONS)
        scores.append(
            QualityScore(
                overall=round(min(1.0, max(0.0, overall)), 6),
                dimensions={name: round(value, 6) for name, value in dimensions.items()},
            )
        )
    return scores
